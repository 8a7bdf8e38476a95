"""In-process implementation of the thread persistence API.

Every operation authorizes the caller against the thread owner and returns an
``ApiResponse`` carrying the HTTP status the remote service would answer with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

from loguru import logger

from thread_runtime.catalog.selection import ModelSelection, ModelSelectionResolver
from thread_runtime.memory.compaction import CompactionPolicy
from thread_runtime.memory.thread_store import ThreadStore
from thread_runtime.messages import copy_message, message_text, validate_message
from thread_runtime.models import ThreadRecord, ThreadUsage

TITLE_MAX_CHARS = 60


@dataclass(frozen=True)
class ApiResponse:
    status: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _error(status: int, message: str, code: str | None = None) -> ApiResponse:
    body: dict[str, Any] = {"error": message}
    if code:
        body["code"] = code
    return ApiResponse(status, body)


_UNAUTHORIZED = ("Unauthorized", "unauthorized")
_THREAD_NOT_FOUND = ("Thread not found", "thread_not_found")
_MESSAGE_NOT_FOUND = ("Message not found", "message_not_found")


class _Rejected(Exception):
    def __init__(self, response: ApiResponse):
        super().__init__(response.body.get("error"))
        self.response = response


class ThreadsApi:
    def __init__(
        self,
        thread_store: ThreadStore,
        resolver: ModelSelectionResolver,
        *,
        compaction_enabled: bool = True,
    ):
        self._threads = thread_store
        self._resolver = resolver
        self._compaction_enabled = compaction_enabled

    def list_threads(self, user_id: str | None, *, limit: int | None = None) -> ApiResponse:
        if not user_id:
            return _error(401, *_UNAUTHORIZED)
        threads = self._threads.list_threads(user_id=user_id, limit=limit)
        return ApiResponse(200, {"threads": [t.to_dict(include_history=False) for t in threads]})

    def create_thread(self, user_id: str | None, body: dict | None) -> ApiResponse:
        if not user_id:
            return _error(401, *_UNAUTHORIZED)
        body = body or {}
        if not isinstance(body, dict):
            return _error(400, "Invalid request body")

        try:
            selection = self._resolve_optional_selection(body.get("modelSelection"), None)
            initial = body.get("initialUserMessage")
            if initial is not None:
                initial = self._pending_message(initial)
        except _Rejected as rejected:
            return rejected.response

        title = body.get("title")
        if not isinstance(title, str) or not title.strip():
            title = message_text(initial)[:TITLE_MAX_CHARS] if initial is not None else None

        thread = self._threads.create_thread(user_id, selection, title=title)
        if initial is not None:
            thread = self._threads.upsert_message(
                thread.id,
                initial,
                model_selection=selection,
                usage=ThreadUsage(),
            )
        logger.info(f"Thread {thread.id} created for {user_id}")
        return ApiResponse(201, {"thread": thread.to_dict()})

    def get_thread(self, user_id: str | None, thread_id: str) -> ApiResponse:
        try:
            thread = self._authorize(user_id, thread_id)
        except _Rejected as rejected:
            return rejected.response
        return ApiResponse(200, {"thread": thread.to_dict()})

    def delete_thread(self, user_id: str | None, thread_id: str) -> ApiResponse:
        try:
            self._authorize(user_id, thread_id)
        except _Rejected as rejected:
            return rejected.response
        self._threads.soft_delete_thread(thread_id)
        logger.info(f"Thread {thread_id} soft-deleted")
        return ApiResponse(200, {"ok": True})

    def update_thread(self, user_id: str | None, thread_id: str, body: dict | None) -> ApiResponse:
        try:
            thread = self._authorize(user_id, thread_id)
            if not isinstance(body, dict):
                raise _Rejected(_error(400, "Invalid request body"))
            title = body.get("title")
            if title is not None and not isinstance(title, str):
                raise _Rejected(_error(400, "Invalid title"))
            selection = None
            if "modelSelection" in body:
                parsed = self._resolver.parse(body["modelSelection"])
                if parsed is None:
                    raise _Rejected(_error(400, "Invalid modelSelection"))
                selection = self._resolver.resolve(parsed, thread.model_selection)
            elif title is None:
                raise _Rejected(_error(400, "Nothing to update"))
        except _Rejected as rejected:
            return rejected.response

        updated = self._threads.update_thread_settings(thread_id, title=title, model_selection=selection)
        return ApiResponse(200, {"thread": updated.to_dict()})

    def upsert_message(self, user_id: str | None, thread_id: str, body: dict | None) -> ApiResponse:
        try:
            thread = self._authorize(user_id, thread_id)
            if not isinstance(body, dict) or body.get("message") is None:
                raise _Rejected(_error(400, "Invalid request body"))
            message = self._valid_message(body["message"])
            selection = self._resolve_optional_selection(body.get("modelSelection"), thread.model_selection)
            usage = self._optional_usage(body.get("usage"))
        except _Rejected as rejected:
            return rejected.response

        updated = self._threads.upsert_message(thread_id, message, model_selection=selection, usage=usage)
        if message["role"] == "assistant":
            updated = self._compact(updated)
        return ApiResponse(200, {"thread": updated.to_dict()})

    def edit_message(self, user_id: str | None, thread_id: str, message_id: str, body: dict | None) -> ApiResponse:
        try:
            thread = self._authorize(user_id, thread_id)
            if not isinstance(body, dict) or body.get("message") is None:
                raise _Rejected(_error(400, "Invalid request body"))
            target = thread.find_live(message_id)
            if target is None or target.role != "user":
                raise _Rejected(_error(404, *_MESSAGE_NOT_FOUND))
            message = self._valid_message(body["message"])
            if message["id"] != message_id or message["role"] != "user":
                raise _Rejected(_error(400, "Edited message must keep its id and the user role"))
        except _Rejected as rejected:
            return rejected.response

        try:
            updated = self._threads.edit_and_truncate(thread_id, message_id, message)
        except LookupError:
            return _error(404, *_MESSAGE_NOT_FOUND)
        return ApiResponse(200, {"thread": updated.to_dict()})

    def handle(
        self,
        method: str,
        path: str,
        user_id: str | None,
        body: dict | None = None,
        *,
        query: dict[str, str] | None = None,
    ) -> ApiResponse:
        """Route a REST-style request to the matching operation."""
        method = method.upper()
        segments = [unquote(s) for s in path.split("?")[0].strip("/").split("/") if s]
        if not segments or segments[0] != "threads":
            return _error(404, "Not found")

        try:
            if len(segments) == 1:
                if method == "GET":
                    return self.list_threads(user_id, limit=self._limit(query))
                if method == "POST":
                    return self.create_thread(user_id, body)
            elif len(segments) == 2:
                thread_id = segments[1]
                if method == "GET":
                    return self.get_thread(user_id, thread_id)
                if method == "DELETE":
                    return self.delete_thread(user_id, thread_id)
                if method == "PATCH":
                    return self.update_thread(user_id, thread_id, body)
            elif len(segments) == 3 and segments[2] == "messages":
                if method == "POST":
                    return self.upsert_message(user_id, segments[1], body)
            elif len(segments) == 4 and segments[2] == "messages":
                if method == "PATCH":
                    return self.edit_message(user_id, segments[1], segments[3], body)
            else:
                return _error(404, "Not found")
        except ValueError as exc:
            return _error(400, str(exc))
        return _error(405, f"Method {method} not allowed")

    def _authorize(self, user_id: str | None, thread_id: str) -> ThreadRecord:
        if not user_id:
            raise _Rejected(_error(401, *_UNAUTHORIZED))
        thread = self._threads.get_thread(thread_id)
        if thread is None or thread.user_id != user_id or not thread.is_live:
            raise _Rejected(_error(404, *_THREAD_NOT_FOUND))
        return thread

    def _resolve_optional_selection(self, raw: Any, thread_default: ModelSelection | None) -> ModelSelection:
        if raw is None:
            return self._resolver.resolve(None, thread_default)
        if not isinstance(raw, dict):
            raise _Rejected(_error(400, "Invalid modelSelection"))
        return self._resolver.resolve(raw, thread_default)

    def _valid_message(self, raw: Any) -> dict:
        try:
            return copy_message(validate_message(raw))
        except ValueError as exc:
            raise _Rejected(_error(400, str(exc))) from exc

    def _pending_message(self, raw: Any) -> dict:
        message = self._valid_message(raw)
        if message["role"] != "user":
            raise _Rejected(_error(400, "initialUserMessage must have the user role"))
        metadata = dict(message.get("metadata") or {})
        metadata["pending"] = True
        message["metadata"] = metadata
        return message

    def _optional_usage(self, raw: Any) -> ThreadUsage | None:
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise _Rejected(_error(400, "Invalid usage"))
        try:
            return ThreadUsage.from_dict(raw)
        except (TypeError, ValueError) as exc:
            raise _Rejected(_error(400, f"Invalid usage: {exc}")) from exc

    def _compact(self, thread: ThreadRecord) -> ThreadRecord:
        if not self._compaction_enabled:
            return thread
        model = self._resolver.catalog.find_model(thread.model_selection.provider_id, thread.model_selection.model_id)
        if model is None or model.context_limits.total <= 0:
            return thread
        policy = CompactionPolicy(
            max_context_tokens=model.context_limits.total,
            reserved_output_tokens=model.context_limits.max_output,
        )
        result = self._threads.compact_if_needed(thread.id, policy)
        return result.thread if result is not None else thread

    def _limit(self, query: dict[str, str] | None) -> int | None:
        raw = (query or {}).get("limit")
        if raw is None:
            return None
        try:
            return max(1, int(raw))
        except ValueError as exc:
            raise ValueError(f"Invalid limit: {raw}") from exc
