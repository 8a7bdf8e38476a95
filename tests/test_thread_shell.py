import asyncio
import io
from contextlib import redirect_stdout

from tests.memory.base import MemoryStoreTestCase
from tests.session.fakes import ScriptedTransport, text_turn
from thread_runtime.api import LocalPersistenceGateway, ThreadsApi
from thread_runtime.session import ThreadSessionController
from thread_runtime.shell import ThreadShell


class ThreadShellTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        gateway = LocalPersistenceGateway(ThreadsApi(self._threads, self._resolver), "user-1")
        self._transport = ScriptedTransport()
        self._controller = ThreadSessionController(gateway, self._transport, self._resolver)
        self._shell = ThreadShell(self._controller, self._resolver)

    def _run(self, *inputs: str) -> str:
        async def scenario():
            for user_input in inputs:
                await self._shell.handle(user_input)

        buf = io.StringIO()
        with redirect_stdout(buf):
            asyncio.run(scenario())
        return buf.getvalue()

    def test_streams_text_as_it_arrives(self) -> None:
        self._transport.add(*text_turn("a1", "Hello", ", world"))

        output = self._run("hi")

        self.assertIn("assistant> Hello, world", output)
        self.assertEqual(1, output.count("Hello"))

    def test_help_and_unknown_commands(self) -> None:
        output = self._run("/help", "/bogus")
        self.assertIn("/rerun <message-id>", output)
        self.assertIn("Unknown local command: /bogus", output)

    def test_thread_show_and_usage(self) -> None:
        self._transport.add(*text_turn("answer-1", "fine", input_tokens=1200, output_tokens=30))

        output = self._run("how are you?", "/thread show", "/usage")

        self.assertIn("#1 user", output)
        self.assertIn("#2 assistant [answer-1] (id=answer-1) fine", output)
        self.assertIn("- Input tokens: 1,200", output)

    def test_edit_accepts_message_id_prefix(self) -> None:
        self._transport.add(*text_turn("a1", "first"))
        self._run("question")
        user_id = self._controller.snapshot().entries[0].message_id

        output = self._run(f"/edit {user_id[:6]} better question")

        self.assertIn("later messages removed", output)
        self.assertEqual(1, len(self._controller.snapshot().entries))

    def test_rerun_reports_errors(self) -> None:
        self._transport.add(*text_turn("a1", "first"))
        self._transport.add({"type": "error", "errorText": "upstream unavailable"})

        output = self._run("question", "/rerun a1", "/rerun missing")

        self.assertIn("[Error: upstream unavailable]", output)
        self.assertIn("Message not found: missing", output)

    def test_model_and_budget_commands(self) -> None:
        output = self._run("/model openai/gpt-4o-mini", "/budget high")

        self.assertIn("openai/openai/gpt-4o-mini (reasoning=none, via openrouter)", output)
        self.assertIn("does not support 'high'", output)
        self.assertEqual("openai/gpt-4o-mini", self._controller.model_selection.model_id)
