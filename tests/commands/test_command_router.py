import asyncio
import unittest

from thread_runtime.commands.router import CommandRouter


class CommandRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[tuple[str, str | None]] = []

        def recorder(name: str):
            async def handler(command: str | None = None) -> None:
                self.calls.append((name, command))

            return handler

        self.router = CommandRouter(
            on_help=recorder("help"),
            on_threads=recorder("threads"),
            on_thread=recorder("thread"),
            on_model=recorder("model"),
            on_budget=recorder("budget"),
            on_edit=recorder("edit"),
            on_rerun=recorder("rerun"),
            on_usage=recorder("usage"),
            on_unknown=lambda command: self.calls.append(("unknown", command)),
        )

    def test_plain_text_is_not_a_command(self) -> None:
        handled = asyncio.run(self.router.try_handle("hello there"))
        self.assertFalse(handled)
        self.assertEqual([], self.calls)

    def test_routes_on_first_token(self) -> None:
        for command in ("/help", "/threads 5", "/thread open abc", "/model openai/gpt-5-mini high",
                        "/budget low", "/edit m1 new text", "/rerun m2", "/usage"):
            self.assertTrue(asyncio.run(self.router.try_handle(command)))

        self.assertEqual(
            [
                ("help", None),
                ("threads", "/threads 5"),
                ("thread", "/thread open abc"),
                ("model", "/model openai/gpt-5-mini high"),
                ("budget", "/budget low"),
                ("edit", "/edit m1 new text"),
                ("rerun", "/rerun m2"),
                ("usage", None),
            ],
            self.calls,
        )

    def test_prefix_of_a_command_is_unknown(self) -> None:
        self.assertTrue(asyncio.run(self.router.try_handle("  /threadsx  ")))
        self.assertEqual([("unknown", "/threadsx")], self.calls)


if __name__ == "__main__":
    unittest.main()
