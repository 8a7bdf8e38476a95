from __future__ import annotations

from typing import Any, Protocol

from thread_runtime.api.threads_api import ApiResponse, ThreadsApi
from thread_runtime.catalog.selection import ModelSelection
from thread_runtime.errors import error_for_status
from thread_runtime.models import ThreadRecord, ThreadUsage


class PersistenceGateway(Protocol):
    """Durable thread/message store as seen by one authenticated user."""

    async def list_threads(self, *, limit: int | None = None) -> list[ThreadRecord]: ...

    async def create_thread(
        self,
        *,
        title: str | None = None,
        initial_user_message: dict | None = None,
        model_selection: ModelSelection | None = None,
    ) -> ThreadRecord: ...

    async def get_thread(self, thread_id: str) -> ThreadRecord: ...

    async def delete_thread(self, thread_id: str) -> None: ...

    async def update_thread(
        self,
        thread_id: str,
        *,
        model_selection: ModelSelection | None = None,
        title: str | None = None,
    ) -> ThreadRecord: ...

    async def upsert_message(
        self,
        thread_id: str,
        message: dict,
        *,
        model_selection: ModelSelection | None = None,
        usage: ThreadUsage | None = None,
    ) -> ThreadRecord: ...

    async def edit_message(self, thread_id: str, message_id: str, message: dict) -> ThreadRecord: ...


def unwrap_response(status: int, body: Any) -> dict:
    """Return the body of a 2xx response, otherwise raise the mapped runtime error."""
    if 200 <= status < 300:
        return body if isinstance(body, dict) else {}
    detail = body.get("error") if isinstance(body, dict) else None
    code = body.get("code") if isinstance(body, dict) else None
    raise error_for_status(
        status,
        str(detail or f"Request failed with status {status}"),
        message_route=code == "message_not_found",
    )


def thread_from_body(body: dict) -> ThreadRecord:
    return ThreadRecord.from_dict(body["thread"])


def create_thread_body(
    title: str | None,
    initial_user_message: dict | None,
    model_selection: ModelSelection | None,
) -> dict:
    body: dict[str, Any] = {}
    if title is not None:
        body["title"] = title
    if initial_user_message is not None:
        body["initialUserMessage"] = initial_user_message
    if model_selection is not None:
        body["modelSelection"] = model_selection.to_dict()
    return body


def update_thread_body(model_selection: ModelSelection | None, title: str | None) -> dict:
    body: dict[str, Any] = {}
    if model_selection is not None:
        body["modelSelection"] = model_selection.to_dict()
    if title is not None:
        body["title"] = title
    return body


def upsert_message_body(message: dict, model_selection: ModelSelection | None, usage: ThreadUsage | None) -> dict:
    body: dict[str, Any] = {"message": message}
    if model_selection is not None:
        body["modelSelection"] = model_selection.to_dict()
    if usage is not None:
        body["usage"] = usage.to_dict()
    return body


class LocalPersistenceGateway:
    """Talks to an in-process ``ThreadsApi`` on behalf of ``user_id``."""

    def __init__(self, api: ThreadsApi, user_id: str | None):
        self._api = api
        self._user_id = user_id

    async def list_threads(self, *, limit: int | None = None) -> list[ThreadRecord]:
        body = self._unwrap(self._api.list_threads(self._user_id, limit=limit))
        return [ThreadRecord.from_dict(t) for t in body.get("threads", [])]

    async def create_thread(
        self,
        *,
        title: str | None = None,
        initial_user_message: dict | None = None,
        model_selection: ModelSelection | None = None,
    ) -> ThreadRecord:
        body = create_thread_body(title, initial_user_message, model_selection)
        return thread_from_body(self._unwrap(self._api.create_thread(self._user_id, body)))

    async def get_thread(self, thread_id: str) -> ThreadRecord:
        return thread_from_body(self._unwrap(self._api.get_thread(self._user_id, thread_id)))

    async def delete_thread(self, thread_id: str) -> None:
        self._unwrap(self._api.delete_thread(self._user_id, thread_id))

    async def update_thread(
        self,
        thread_id: str,
        *,
        model_selection: ModelSelection | None = None,
        title: str | None = None,
    ) -> ThreadRecord:
        body = update_thread_body(model_selection, title)
        return thread_from_body(self._unwrap(self._api.update_thread(self._user_id, thread_id, body)))

    async def upsert_message(
        self,
        thread_id: str,
        message: dict,
        *,
        model_selection: ModelSelection | None = None,
        usage: ThreadUsage | None = None,
    ) -> ThreadRecord:
        body = upsert_message_body(message, model_selection, usage)
        return thread_from_body(self._unwrap(self._api.upsert_message(self._user_id, thread_id, body)))

    async def edit_message(self, thread_id: str, message_id: str, message: dict) -> ThreadRecord:
        response = self._api.edit_message(self._user_id, thread_id, message_id, {"message": message})
        return thread_from_body(self._unwrap(response))

    def _unwrap(self, response: ApiResponse) -> dict:
        return unwrap_response(response.status, response.body)
