import asyncio

from thread_runtime.api import LocalPersistenceGateway
from thread_runtime.errors import PersistenceFailure

PAUSE = object()


class ScriptedTransport:
    """Replays one scripted event list per request. ``PAUSE`` blocks until resumed."""

    def __init__(self) -> None:
        self.scripts: list[list] = []
        self.requests = []
        self.closed = 0
        self.open_streams = 0
        self.max_open_streams = 0
        self.paused: asyncio.Queue = asyncio.Queue()
        self._resume: asyncio.Queue = asyncio.Queue()

    def add(self, *events) -> None:
        self.scripts.append(list(events))

    def resume(self) -> None:
        self._resume.put_nowait(None)

    async def stream(self, request):
        self.requests.append(request)
        events = self.scripts.pop(0)
        self.open_streams += 1
        self.max_open_streams = max(self.max_open_streams, self.open_streams)
        try:
            for event in events:
                if event is PAUSE:
                    await self.paused.put(None)
                    await self._resume.get()
                else:
                    yield event
        finally:
            self.open_streams -= 1
            self.closed += 1


class FlakyGateway(LocalPersistenceGateway):
    def __init__(self, api, user_id):
        super().__init__(api, user_id)
        self.fail_assistant_writes = False

    async def upsert_message(self, thread_id, message, **kwargs):
        if self.fail_assistant_writes and message["role"] == "assistant":
            raise PersistenceFailure("store offline")
        return await super().upsert_message(thread_id, message, **kwargs)


def text_turn(message_id: str, *chunks: str, input_tokens: int = 10, output_tokens: int = 4) -> list[dict]:
    events = [
        {"type": "start", "messageId": message_id},
        {"type": "start-step"},
        {"type": "text-start", "id": "t"},
    ]
    events += [{"type": "text-delta", "id": "t", "delta": chunk} for chunk in chunks]
    events += [
        {"type": "text-end", "id": "t"},
        {"type": "finish-step", "usage": {"inputTokens": input_tokens, "outputTokens": output_tokens}},
        {"type": "finish", "finishReason": "stop"},
    ]
    return events


class BrokenTransport:
    """Yields ``events`` and then fails the way a dropped connection does."""

    def __init__(self, events: list[dict], exc: Exception):
        self._events = events
        self._exc = exc

    async def stream(self, request):
        for event in self._events:
            yield event
        raise self._exc
