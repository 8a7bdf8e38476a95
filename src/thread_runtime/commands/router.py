from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_threads: Callable[[str], Awaitable[None]],
        on_thread: Callable[[str], Awaitable[None]],
        on_model: Callable[[str], Awaitable[None]],
        on_budget: Callable[[str], Awaitable[None]],
        on_edit: Callable[[str], Awaitable[None]],
        on_rerun: Callable[[str], Awaitable[None]],
        on_usage: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_threads = on_threads
        self._on_thread = on_thread
        self._on_model = on_model
        self._on_budget = on_budget
        self._on_edit = on_edit
        self._on_rerun = on_rerun
        self._on_usage = on_usage
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command = trimmed.split(maxsplit=1)[0]
        if command == "/help":
            await self._on_help()
            return True
        if command == "/threads":
            await self._on_threads(trimmed)
            return True
        if command == "/thread":
            await self._on_thread(trimmed)
            return True
        if command == "/model":
            await self._on_model(trimmed)
            return True
        if command == "/budget":
            await self._on_budget(trimmed)
            return True
        if command == "/edit":
            await self._on_edit(trimmed)
            return True
        if command == "/rerun":
            await self._on_rerun(trimmed)
            return True
        if command == "/usage":
            await self._on_usage()
            return True

        self._on_unknown(trimmed)
        return True
