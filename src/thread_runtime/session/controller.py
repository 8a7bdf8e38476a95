"""Turn orchestration for one conversation thread.

The controller owns the in-memory transcript. Every mutation happens on the
event loop that drives it; readers only ever see ``TranscriptSnapshot``
copies. A turn appends (or overwrites) the user message, opens exactly one
stream, folds its events with a ``StreamChunkProcessor`` and writes the final
assistant message through the persistence gateway.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from thread_runtime.api.gateway import PersistenceGateway
from thread_runtime.catalog.selection import ModelSelection, ModelSelectionResolver, is_same_model_selection
from thread_runtime.errors import (
    InvalidOperation,
    InvalidRequest,
    MessageNotFound,
    PersistenceFailure,
    ProtocolViolation,
    ThreadNotFound,
    ThreadRuntimeError,
)
from thread_runtime.messages import (
    clear_pending_flag,
    copy_message,
    is_pending_message,
    is_tool_part,
    message_text,
    new_user_message,
    validate_message,
)
from thread_runtime.models import ThreadRecord, ThreadUsage
from thread_runtime.stream.processor import ERROR, IDLE, READY, STREAMING, SUBMITTED, StreamChunkProcessor
from thread_runtime.stream.transport import ChatRequest, ChatTransport, error_event
from thread_runtime.usage import UsageAggregator

TITLE_MAX_CHARS = 60

_TOOL_BUSY_STATES = ("input-streaming", "input-available", "approval-requested")


@dataclass(frozen=True)
class TranscriptEntry:
    message: dict[str, Any]
    ordinal: int | None
    usage: ThreadUsage | None = None
    model_selection: ModelSelection | None = None
    error: str | None = None

    @property
    def message_id(self) -> str:
        return str(self.message.get("id", ""))

    @property
    def role(self) -> str:
        return str(self.message.get("role", ""))

    @property
    def is_provisional(self) -> bool:
        return self.ordinal is None


@dataclass(frozen=True)
class TranscriptSnapshot:
    thread_id: str | None
    title: str | None
    status: str
    entries: tuple[TranscriptEntry, ...]
    model_selection: ModelSelection
    usage: ThreadUsage
    draft: dict[str, Any] | None = None
    draft_target_id: str | None = None
    error_text: str | None = None
    streaming_label: str | None = None
    opaque_events: tuple[dict[str, Any], ...] = ()

    @property
    def messages(self) -> list[dict[str, Any]]:
        """Messages as they should render, with the in-flight draft merged in."""
        messages = [entry.message for entry in self.entries]
        if self.draft is None:
            return messages
        if self.draft_target_id is not None:
            return [self.draft if m.get("id") == self.draft_target_id else m for m in messages]
        return [*messages, self.draft]


@dataclass(frozen=True)
class TurnResult:
    status: str
    message: dict[str, Any] | None
    usage: ThreadUsage
    error: str | None = None
    stopped: bool = False
    violations: tuple[ProtocolViolation, ...] = ()
    opaque_events: tuple[dict[str, Any], ...] = ()


@dataclass
class _PendingWrite:
    thread_id: str
    message: dict[str, Any]
    model_selection: ModelSelection
    usage: ThreadUsage
    target_id: str | None = None


@dataclass
class _Turn:
    processor: StreamChunkProcessor
    request: ChatRequest
    selection: ModelSelection
    target_id: str | None = None
    reader: asyncio.Task | None = None
    stop_requested: bool = False
    started_at: float = 0.0
    entries_before: list[TranscriptEntry] = field(default_factory=list)


Subscriber = Callable[[TranscriptSnapshot], None]


class ThreadSessionController:
    def __init__(
        self,
        gateway: PersistenceGateway,
        transport: ChatTransport,
        resolver: ModelSelectionResolver,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._gateway = gateway
        self._transport = transport
        self._resolver = resolver
        self._clock = clock

        self._thread: ThreadRecord | None = None
        self._entries: list[TranscriptEntry] = []
        self._status = IDLE
        self._error_text: str | None = None
        self._local_selection: ModelSelection | None = None
        self._usage = UsageAggregator()

        self._turn: _Turn | None = None
        self._turn_task: asyncio.Task | None = None
        self._turn_lock = asyncio.Lock()
        self._pending_write: _PendingWrite | None = None
        self._subscribers: list[Subscriber] = []

    @property
    def status(self) -> str:
        return self._status

    @property
    def thread_id(self) -> str | None:
        return self._thread.id if self._thread else None

    @property
    def thread(self) -> ThreadRecord | None:
        return self._thread

    @property
    def is_streaming(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    @property
    def has_unsaved_message(self) -> bool:
        return self._pending_write is not None

    @property
    def model_selection(self) -> ModelSelection:
        """The selection the next turn runs with unless the caller overrides it."""
        if self._thread is not None:
            return self._thread.model_selection
        if self._local_selection is not None:
            return self._local_selection
        return self._resolver.default_selection()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> TranscriptSnapshot:
        turn = self._turn
        draft = None
        draft_target_id = None
        opaque_events: tuple[dict[str, Any], ...] = ()
        if turn is not None and self._status in (SUBMITTED, STREAMING):
            draft = turn.processor.message()
            draft_target_id = turn.target_id
            opaque_events = tuple(copy.deepcopy(e) for e in turn.processor.opaque_events)
        return TranscriptSnapshot(
            thread_id=self.thread_id,
            title=self._thread.title if self._thread else None,
            status=self._status,
            entries=tuple(
                TranscriptEntry(
                    message=copy_message(e.message),
                    ordinal=e.ordinal,
                    usage=e.usage,
                    model_selection=e.model_selection,
                    error=e.error,
                )
                for e in self._entries
            ),
            model_selection=self.model_selection,
            usage=self.usage_rollup(),
            draft=draft,
            draft_target_id=draft_target_id,
            error_text=self._error_text,
            streaming_label=self.streaming_label(),
            opaque_events=opaque_events,
        )

    def usage_rollup(self) -> ThreadUsage:
        return self._usage.rollup(e.message_id for e in self._entries if not e.is_provisional)

    def streaming_label(self) -> str | None:
        if self._status == SUBMITTED:
            return "Generating answer"
        if self._status != STREAMING or self._turn is None:
            return None
        last_part = self._turn.processor.last_part
        if last_part is None:
            return "Generating answer"
        if last_part.get("type") == "reasoning":
            return "Reasoning"
        if is_tool_part(last_part) and last_part.get("state") in _TOOL_BUSY_STATES:
            return "Using tools"
        return "Generating answer"

    async def load(self, thread_id: str) -> TranscriptSnapshot:
        await self.stop()
        thread = await self._gateway.get_thread(thread_id)
        self._apply_thread(thread)
        self._status = IDLE
        self._error_text = None
        self._pending_write = None
        logger.info(f"Loaded thread {thread.id} ({len(self._entries)} messages)")
        self._notify()
        return self.snapshot()

    async def list_threads(self, *, limit: int | None = None) -> list[ThreadRecord]:
        return await self._gateway.list_threads(limit=limit)

    async def create_thread(
        self,
        *,
        title: str | None = None,
        initial_user_message: dict | str | None = None,
    ) -> TranscriptSnapshot:
        await self.stop()
        if isinstance(initial_user_message, str):
            initial_user_message = new_user_message(initial_user_message)
        thread = await self._gateway.create_thread(
            title=title,
            initial_user_message=initial_user_message,
            model_selection=self.model_selection,
        )
        self._reset()
        self._apply_thread(thread)
        logger.info(f"Created thread {thread.id}")
        self._notify()
        return self.snapshot()

    def reset(self) -> None:
        """Forget the loaded thread; the next ``send`` creates a new one."""
        if self.is_streaming:
            raise InvalidOperation("Cannot reset while a turn is streaming")
        self._reset()
        self._notify()

    async def delete_thread(self) -> None:
        thread_id = self._require_thread().id
        await self.stop()
        await self._gateway.delete_thread(thread_id)
        logger.info(f"Deleted thread {thread_id}")
        self._reset()
        self._notify()

    async def set_model_selection(self, selection: ModelSelection | dict) -> ModelSelection:
        resolved = self._resolver.resolve(selection, self.model_selection)
        await self._persist_default_selection(resolved)
        return resolved

    async def change_model(self, selection: ModelSelection | dict) -> ModelSelection:
        """Switch model; the reasoning budget resets to the new model's default."""
        resolved = self._resolver.with_model(selection)
        await self._persist_default_selection(resolved)
        return resolved

    async def set_reasoning_budget(self, budget: str) -> ModelSelection:
        resolved = self._resolver.with_budget(self.model_selection, budget)
        await self._persist_default_selection(resolved)
        return resolved

    async def send(
        self,
        content: str | dict,
        model_selection: ModelSelection | dict | None = None,
    ) -> TurnResult:
        return await self._run_exclusive(lambda: self._prepare_send(content, model_selection))

    async def invoke_pending(self, model_selection: ModelSelection | dict | None = None) -> TurnResult:
        """Run the turn for a thread's pending initial message."""
        return await self._run_exclusive(lambda: self._prepare_pending(model_selection))

    async def rerun(
        self,
        message_id: str,
        model_selection_override: ModelSelection | dict | None = None,
    ) -> TurnResult:
        """Regenerate an assistant turn in place; later messages are left alone."""
        return await self._run_exclusive(lambda: self._prepare_rerun(message_id, model_selection_override))

    async def _prepare_send(self, content: str | dict, model_selection: ModelSelection | dict | None) -> _Turn:
        message = self._user_message(content)
        selection = self._resolver.resolve(model_selection, self.model_selection)

        if self._thread is None:
            thread = await self._gateway.create_thread(
                title=message_text(message)[:TITLE_MAX_CHARS] or None,
                model_selection=selection,
            )
            self._apply_thread(thread)
        elif model_selection is not None and not is_same_model_selection(self._thread.model_selection, selection):
            self._apply_thread(await self._gateway.update_thread(self._thread.id, model_selection=selection))

        entries_before = list(self._entries)
        index = self._find_index(message["id"])
        if index is not None:
            if self._entries[index].role != "user":
                raise InvalidOperation(f"Message {message['id']} is not a user message")
            existing = self._entries[index]
            self._entries = self._entries[:index] + [
                TranscriptEntry(message, existing.ordinal, existing.usage, selection)
            ]
        else:
            self._entries.append(TranscriptEntry(message, None, None, selection))
        self._error_text = None
        self._notify()

        thread_id = self._thread.id
        try:
            if index is not None:
                thread = await self._gateway.edit_message(thread_id, message["id"], message)
            else:
                thread = await self._gateway.upsert_message(thread_id, message, model_selection=selection)
        except ThreadRuntimeError as exc:
            self._entries = entries_before
            self._notify()
            raise self._persistence_error(exc, message) from exc
        self._apply_thread(thread)
        self._notify()

        request = self._chat_request("submit-message", selection, message_id=message["id"])
        return _Turn(StreamChunkProcessor(), request, selection)

    async def _prepare_pending(self, model_selection: ModelSelection | dict | None) -> _Turn:
        thread = self._require_thread()
        index = None
        for i in range(len(self._entries) - 1, -1, -1):
            entry = self._entries[i]
            if entry.role == "user" and is_pending_message(entry.message):
                index = i
                break
        if index is None:
            raise InvalidOperation("No pending thread message found")
        if index + 1 < len(self._entries) and self._entries[index + 1].role == "assistant":
            raise InvalidOperation("No pending thread message found")

        selection = self._resolver.resolve(model_selection, thread.model_selection)
        if model_selection is not None and not is_same_model_selection(thread.model_selection, selection):
            self._apply_thread(await self._gateway.update_thread(thread.id, model_selection=selection))

        message = clear_pending_flag(self._entries[index].message)
        updated = await self._gateway.upsert_message(
            thread.id,
            message,
            model_selection=selection,
            usage=self._entries[index].usage,
        )
        self._apply_thread(updated)
        self._notify()

        request = self._chat_request("submit-message", selection, message_id=message["id"])
        return _Turn(StreamChunkProcessor(), request, selection)

    async def edit_and_truncate(self, message_id: str, new_message: str | dict) -> TranscriptSnapshot:
        """Replace a user message in place and drop everything after it, without generating."""
        thread = self._require_thread()
        if self.is_streaming:
            raise InvalidOperation("Cannot edit while a turn is streaming")

        index = self._find_index(message_id)
        if index is None or self._entries[index].is_provisional:
            raise MessageNotFound(f"Message not found: {message_id}")
        target = self._entries[index]
        if target.role != "user":
            raise InvalidOperation(f"Only user messages can be edited: {message_id}")

        if isinstance(new_message, str):
            message = copy_message(target.message)
            message["parts"] = [{"type": "text", "text": new_message}]
        else:
            message = copy_message(validate_message(new_message))
            if message["id"] != message_id or message["role"] != "user":
                raise InvalidRequest("An edited message must keep its id and the user role")

        entries_before = list(self._entries)
        self._entries = self._entries[:index] + [
            TranscriptEntry(message, target.ordinal, target.usage, target.model_selection)
        ]
        self._notify()
        try:
            updated = await self._gateway.edit_message(thread.id, message_id, message)
        except ThreadRuntimeError as exc:
            self._entries = entries_before
            self._notify()
            raise self._persistence_error(exc, message) from exc

        self._apply_thread(updated)
        self._status = IDLE
        self._error_text = None
        self._notify()
        return self.snapshot()

    async def _prepare_rerun(
        self,
        message_id: str,
        model_selection_override: ModelSelection | dict | None,
    ) -> _Turn:
        thread = self._require_thread()
        index = self._find_index(message_id)
        if index is None or self._entries[index].is_provisional:
            raise MessageNotFound(f"Message not found: {message_id}")
        if self._entries[index].role != "assistant":
            raise InvalidOperation(f"Only assistant messages can be rerun: {message_id}")

        selection = self._resolver.resolve(model_selection_override, thread.model_selection)
        if model_selection_override is not None and not is_same_model_selection(thread.model_selection, selection):
            self._apply_thread(await self._gateway.update_thread(thread.id, model_selection=selection))

        request = self._chat_request("regenerate-message", selection, message_id=message_id, before_index=index)
        turn = _Turn(StreamChunkProcessor(message_id=message_id), request, selection, target_id=message_id)
        return turn

    async def stop(self) -> None:
        """Cancel the active stream and wait until its turn is finalized. Idempotent."""
        task = self._turn_task
        if task is None or task.done():
            return
        turn = self._turn
        if turn is not None:
            turn.stop_requested = True
            if turn.reader is not None and not turn.reader.done():
                turn.reader.cancel()
        logger.debug("Stop requested for the active turn")
        await asyncio.wait({task})

    async def retry_persistence(self) -> TranscriptSnapshot:
        pending = self._pending_write
        if pending is None:
            raise InvalidOperation("There is no unsaved message to retry")

        try:
            thread = await self._gateway.upsert_message(
                pending.thread_id,
                pending.message,
                model_selection=pending.model_selection,
                usage=pending.usage,
            )
        except PersistenceFailure as exc:
            logger.error(f"Retrying the write of message {pending.message['id']} failed: {exc}")
            raise PersistenceFailure(str(exc), unsaved_message=copy_message(pending.message), cause=exc) from exc

        self._pending_write = None
        if self.thread_id == pending.thread_id:
            self._apply_thread(thread)
            self._status = READY
            self._error_text = None
            self._notify()
        logger.info(f"Persisted message {pending.message['id']} on retry")
        return self.snapshot()

    async def _run_exclusive(self, prepare: Callable[[], Awaitable[_Turn]]) -> TurnResult:
        """Stop the active turn and claim the turn slot as one step, then wait for the new turn."""
        await self.stop()
        async with self._turn_lock:
            # A caller that queued on the lock may find a turn started by the previous holder.
            await self.stop()
            turn = await prepare()
            task = asyncio.create_task(self._run_turn(turn))
            self._turn = turn
            self._turn_task = task
        return await task

    async def _run_turn(self, turn: _Turn) -> TurnResult:
        processor = turn.processor
        processor.submit()
        self._status = SUBMITTED
        turn.started_at = self._clock()
        logger.info(
            f"Turn started on thread {turn.request.thread_id} "
            f"({turn.request.trigger}, {turn.selection.label})"
        )
        self._notify()

        if not turn.stop_requested:
            turn.reader = asyncio.create_task(self._read_stream(turn))
            try:
                await turn.reader
            except asyncio.CancelledError:
                if not turn.stop_requested:
                    turn.reader.cancel()
                    processor.stop("cancelled")
                    self._status = processor.status
                    self._turn = None
                    self._notify()
                    raise
            except Exception as exc:
                logger.error(f"Chat stream failed on thread {turn.request.thread_id}: {type(exc).__name__}: {exc}")
                if not processor.is_terminal:
                    processor.apply(error_event(f"Chat stream failed: {exc}"))
        stopped = turn.stop_requested and processor.stop()
        if not processor.is_terminal:
            processor.stop("stream ended")
        duration_ms = max(0, int((self._clock() - turn.started_at) * 1000))

        try:
            if processor.status == ERROR:
                return self._finish_with_error(turn, duration_ms)
            return await self._finish_ready(turn, duration_ms, stopped=stopped)
        finally:
            self._turn = None
            self._notify()

    async def _read_stream(self, turn: _Turn) -> None:
        processor = turn.processor
        async with aclosing(self._transport.stream(turn.request)) as events:
            async for event in events:
                processor.apply(event)
                self._status = processor.status
                self._notify()
                if processor.is_terminal:
                    break

    async def _finish_ready(self, turn: _Turn, duration_ms: int, *, stopped: bool) -> TurnResult:
        processor = turn.processor
        message = processor.message()
        # Stopped and aborted turns report no token usage, only their duration.
        input_tokens, output_tokens = (0, 0) if processor.abort_reason else processor.usage
        usage = ThreadUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_duration_ms=duration_ms,
        )

        entries_before = list(self._entries)
        self._place_message(turn, message, turn.selection)
        self._status = READY
        self._notify()

        thread_id = turn.request.thread_id
        try:
            thread = await self._gateway.upsert_message(
                thread_id,
                message,
                model_selection=turn.selection,
                usage=usage,
            )
        except ThreadRuntimeError as exc:
            self._entries = entries_before
            self._status = ERROR
            self._error_text = str(exc)
            if isinstance(exc, PersistenceFailure):
                self._pending_write = _PendingWrite(thread_id, message, turn.selection, usage, turn.target_id)
            logger.error(f"Persisting message {message['id']} failed: {exc}")
            raise self._persistence_error(exc, message) from exc

        self._pending_write = None
        self._apply_thread(thread)
        record = thread.find_live(message["id"])
        final_usage = record.usage if record is not None else usage
        logger.info(
            f"Turn finished on thread {thread_id}: {'stopped' if stopped else processor.finish_reason or 'ready'}, "
            f"{final_usage.input_tokens} in / {final_usage.output_tokens} out, {duration_ms} ms"
        )
        return TurnResult(
            status=READY,
            message=copy_message(message),
            usage=final_usage,
            stopped=stopped,
            violations=tuple(processor.violations),
            opaque_events=tuple(processor.opaque_events),
        )

    def _finish_with_error(self, turn: _Turn, duration_ms: int) -> TurnResult:
        processor = turn.processor
        message = processor.message()
        self._error_text = processor.error_text
        # The partial draft stays visible but is never written as a successful turn.
        if turn.target_id is None and processor.has_content:
            self._entries.append(TranscriptEntry(message, None, None, turn.selection, processor.error_text))
        self._status = ERROR
        logger.warning(f"Turn failed on thread {turn.request.thread_id}: {processor.error_text}")
        return TurnResult(
            status=ERROR,
            message=copy_message(message),
            usage=ThreadUsage(total_duration_ms=duration_ms),
            error=processor.error_text,
            violations=tuple(processor.violations),
            opaque_events=tuple(processor.opaque_events),
        )

    def _place_message(self, turn: _Turn, message: dict, selection: ModelSelection) -> None:
        if turn.target_id is not None:
            index = self._find_index(turn.target_id)
            if index is not None:
                existing = self._entries[index]
                self._entries[index] = TranscriptEntry(message, existing.ordinal, existing.usage, selection)
                return
        self._entries.append(TranscriptEntry(message, None, None, selection))

    def _chat_request(
        self,
        trigger: str,
        selection: ModelSelection,
        *,
        message_id: str,
        before_index: int | None = None,
    ) -> ChatRequest:
        entries = self._entries if before_index is None else self._entries[:before_index]
        thread_id = self._require_thread().id
        return ChatRequest(
            id=thread_id,
            thread_id=thread_id,
            messages=[copy_message(e.message) for e in entries],
            model_selection=selection,
            trigger=trigger,
            message_id=message_id,
        )

    async def _persist_default_selection(self, selection: ModelSelection) -> None:
        if self._thread is None:
            self._local_selection = selection
        elif not is_same_model_selection(self._thread.model_selection, selection):
            self._apply_thread(await self._gateway.update_thread(self._thread.id, model_selection=selection))
        self._notify()

    def _user_message(self, content: str | dict) -> dict:
        if isinstance(content, str):
            if not content.strip():
                raise InvalidRequest("Message text is empty")
            return new_user_message(content)
        try:
            message = copy_message(validate_message(content))
        except ValueError as exc:
            raise InvalidRequest(str(exc), cause=exc) from exc
        if message["role"] != "user":
            raise InvalidOperation("Only user messages can be sent")
        return message

    def _persistence_error(self, exc: ThreadRuntimeError, message: dict) -> ThreadRuntimeError:
        if isinstance(exc, PersistenceFailure):
            return PersistenceFailure(str(exc), unsaved_message=copy_message(message), cause=exc)
        return exc

    def _apply_thread(self, thread: ThreadRecord) -> None:
        self._thread = thread.without_history()
        self._entries = [
            TranscriptEntry(
                message=copy_message(record.message),
                ordinal=record.ordinal,
                usage=record.usage,
                model_selection=record.model_selection,
                error=record.error,
            )
            for record in thread.live_history()
        ]
        self._usage.hydrate(thread)

    def _require_thread(self) -> ThreadRecord:
        if self._thread is None:
            raise ThreadNotFound("No thread is loaded")
        return self._thread

    def _find_index(self, message_id: str) -> int | None:
        for i, entry in enumerate(self._entries):
            if entry.message_id == message_id:
                return i
        return None

    def _reset(self) -> None:
        self._thread = None
        self._entries = []
        self._status = IDLE
        self._error_text = None
        self._pending_write = None
        self._usage.clear()

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Transcript subscriber failed")
