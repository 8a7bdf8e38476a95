from __future__ import annotations

from loguru import logger

from thread_runtime.catalog.parser import REASONING_BUDGETS
from thread_runtime.catalog.selection import ModelSelectionResolver
from thread_runtime.commands.router import CommandRouter
from thread_runtime.errors import PersistenceFailure, ThreadRuntimeError
from thread_runtime.services.thread_formatter import ThreadFormatter
from thread_runtime.session.controller import ThreadSessionController, TranscriptSnapshot, TurnResult
from thread_runtime.stream.processor import ERROR


class ThreadShell:
    """Interactive front end: routes slash commands and prints streamed turns."""

    _LINE_PREFIX = "assistant> "

    def __init__(self, controller: ThreadSessionController, resolver: ModelSelectionResolver):
        self._controller = controller
        self._resolver = resolver
        self._formatter = ThreadFormatter(line_prefix=self._LINE_PREFIX)
        self._printed_chars = 0
        self._router = CommandRouter(
            on_help=self._on_help,
            on_threads=self._handle_threads_command,
            on_thread=self._handle_thread_command,
            on_model=self._handle_model_command,
            on_budget=self._handle_budget_command,
            on_edit=self._handle_edit_command,
            on_rerun=self._handle_rerun_command,
            on_usage=self._handle_usage_command,
            on_unknown=self._on_unknown_command,
        )
        controller.subscribe(self._on_snapshot)

    async def handle(self, user_input: str) -> None:
        if await self._router.try_handle(user_input):
            return
        self._begin_turn()
        await self._run_turn(self._controller.send(user_input))

    async def stop(self) -> None:
        await self._controller.stop()

    async def _run_turn(self, turn) -> None:
        try:
            result: TurnResult = await turn
        except PersistenceFailure as ex:
            print(f"\n{self._LINE_PREFIX}Response could not be saved: {ex}")
            return
        except ThreadRuntimeError as ex:
            print(f"\n{self._LINE_PREFIX}{ex}")
            return
        print()
        if result.status == ERROR:
            print(f"{self._LINE_PREFIX}[Error: {result.error}]")
        elif result.stopped:
            print(f"{self._LINE_PREFIX}[Stopped]")

    def _begin_turn(self) -> None:
        self._printed_chars = 0
        print(self._LINE_PREFIX, end="", flush=True)

    def _on_snapshot(self, snapshot: TranscriptSnapshot) -> None:
        if snapshot.draft is None:
            return
        text = "".join(p.get("text", "") for p in snapshot.draft.get("parts", []) if p.get("type") == "text")
        if len(text) > self._printed_chars:
            print(text[self._printed_chars :], end="", flush=True)
            self._printed_chars = len(text)

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help")
        print(f"{self._LINE_PREFIX}- /threads [limit]")
        print(f"{self._LINE_PREFIX}- /thread")
        print(f"{self._LINE_PREFIX}- /thread new [title]")
        print(f"{self._LINE_PREFIX}- /thread open <id>")
        print(f"{self._LINE_PREFIX}- /thread show")
        print(f"{self._LINE_PREFIX}- /thread delete")
        print(f"{self._LINE_PREFIX}- /model [<provider>/<model> [budget]]")
        print(f"{self._LINE_PREFIX}- /budget <{'|'.join(REASONING_BUDGETS)}>")
        print(f"{self._LINE_PREFIX}- /edit <message-id> <text>")
        print(f"{self._LINE_PREFIX}- /rerun <message-id> [<provider>/<model>]")
        print(f"{self._LINE_PREFIX}- /usage")
        print(f"{self._LINE_PREFIX}Press Ctrl-C while a response streams to stop it.")

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed}")

    async def _handle_threads_command(self, command: str) -> None:
        parts = command.split()
        limit = 20
        if len(parts) >= 2:
            try:
                limit = int(parts[1])
            except ValueError:
                print(f"{self._LINE_PREFIX}Usage: /threads [limit]")
                return
        try:
            threads = await self._controller.list_threads(limit=limit)
        except ThreadRuntimeError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return
        if not threads:
            print(f"{self._LINE_PREFIX}No threads found.")
            return
        print(f"{self._LINE_PREFIX}Recent threads:")
        for thread in threads:
            print(self._formatter.format_thread_list_entry(thread, active_thread_id=self._controller.thread_id))

    async def _handle_thread_command(self, command: str) -> None:
        parts = command.split()
        try:
            if len(parts) == 1:
                snapshot = self._controller.snapshot()
                if snapshot.thread_id is None:
                    print(f"{self._LINE_PREFIX}Current thread: none (the next message starts one)")
                    return
                print(
                    f"{self._LINE_PREFIX}Current thread: {snapshot.title} "
                    f"[{self._formatter.short_id(snapshot.thread_id)}] (id={snapshot.thread_id})"
                )
                print(f"{self._LINE_PREFIX}Model: {self._formatter.format_selection(snapshot.model_selection)}")
                return

            if parts[1] == "new":
                title = command.partition("new")[2].strip()
                if title:
                    snapshot = await self._controller.create_thread(title=title)
                    print(f"{self._LINE_PREFIX}Started new thread: {snapshot.title} (id={snapshot.thread_id})")
                else:
                    self._controller.reset()
                    print(f"{self._LINE_PREFIX}Started new thread; it is saved with your next message.")
                return

            if parts[1] == "open" and len(parts) == 3:
                snapshot = await self._controller.load(parts[2])
                print(
                    f"{self._LINE_PREFIX}Opened thread {snapshot.title} "
                    f"[{self._formatter.short_id(parts[2])}] ({len(snapshot.entries)} messages)"
                )
                for line in self._formatter.format_transcript_lines(snapshot):
                    print(line)
                return

            if parts[1] == "show" and len(parts) == 2:
                for line in self._formatter.format_transcript_lines(self._controller.snapshot()):
                    print(line)
                return

            if parts[1] == "delete" and len(parts) == 2:
                thread_id = self._controller.thread_id
                await self._controller.delete_thread()
                print(f"{self._LINE_PREFIX}Deleted thread {thread_id}")
                return
        except ThreadRuntimeError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return

        print(f"{self._LINE_PREFIX}Usage: /thread [new [title] | open <id> | show | delete]")

    async def _handle_model_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) == 1:
            print(f"{self._LINE_PREFIX}Model: {self._formatter.format_selection(self._controller.model_selection)}")
            print(f"{self._LINE_PREFIX}Available models:")
            for model in self._resolver.catalog.iter_models():
                print(f"{self._LINE_PREFIX}- {model.id} (budgets: {', '.join(model.budgets)})")
            return
        if len(parts) > 3:
            print(f"{self._LINE_PREFIX}Usage: /model <provider>/<model> [budget]")
            return

        model = self._resolver.catalog.find_model(None, parts[1])
        if model is None:
            print(f"{self._LINE_PREFIX}Unknown model: {parts[1]}")
            return
        request = {"providerId": model.provider_id, "modelId": model.id}
        try:
            if len(parts) == 3:
                selection = await self._controller.set_model_selection({**request, "reasoningBudget": parts[2]})
            else:
                selection = await self._controller.change_model(request)
        except ThreadRuntimeError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return
        print(f"{self._LINE_PREFIX}Model: {self._formatter.format_selection(selection)}")

    async def _handle_budget_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) != 2 or parts[1] not in REASONING_BUDGETS:
            print(f"{self._LINE_PREFIX}Usage: /budget <{'|'.join(REASONING_BUDGETS)}>")
            return
        try:
            selection = await self._controller.set_reasoning_budget(parts[1])
        except ThreadRuntimeError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return
        if selection.reasoning_budget != parts[1]:
            print(f"{self._LINE_PREFIX}{selection.model_id} does not support '{parts[1]}'")
        print(f"{self._LINE_PREFIX}Model: {self._formatter.format_selection(selection)}")

    async def _handle_edit_command(self, command: str) -> None:
        parts = command.split(maxsplit=2)
        if len(parts) < 3:
            print(f"{self._LINE_PREFIX}Usage: /edit <message-id> <text>")
            return
        message_id = self._resolve_message_id(parts[1])
        try:
            snapshot = await self._controller.edit_and_truncate(message_id, parts[2])
        except ThreadRuntimeError as ex:
            print(f"{self._LINE_PREFIX}{ex}")
            return
        print(f"{self._LINE_PREFIX}Edited message {self._formatter.short_id(message_id)}; later messages removed.")
        for line in self._formatter.format_transcript_lines(snapshot):
            print(line)

    async def _handle_rerun_command(self, command: str) -> None:
        parts = command.split()
        if len(parts) not in (2, 3):
            print(f"{self._LINE_PREFIX}Usage: /rerun <message-id> [<provider>/<model>]")
            return
        override = None
        if len(parts) == 3:
            model = self._resolver.catalog.find_model(None, parts[2])
            if model is None:
                print(f"{self._LINE_PREFIX}Unknown model: {parts[2]}")
                return
            override = {"providerId": model.provider_id, "modelId": model.id}
        message_id = self._resolve_message_id(parts[1])
        self._begin_turn()
        await self._run_turn(self._controller.rerun(message_id, override))

    async def _handle_usage_command(self) -> None:
        for line in self._formatter.format_usage_lines(self._controller.usage_rollup()):
            print(line)

    def _resolve_message_id(self, value: str) -> str:
        """Accept a full message id or an unambiguous prefix of one."""
        matches = [e.message_id for e in self._controller.snapshot().entries if e.message_id.startswith(value)]
        if value in matches or len(matches) != 1:
            return value
        logger.debug(f"Resolved message id prefix {value} to {matches[0]}")
        return matches[0]
