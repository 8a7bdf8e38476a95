from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger
from tenacity import AsyncRetrying

from thread_runtime.api.gateway import (
    create_thread_body,
    thread_from_body,
    unwrap_response,
    update_thread_body,
    upsert_message_body,
)
from thread_runtime.catalog.selection import ModelSelection
from thread_runtime.errors import PersistenceFailure
from thread_runtime.models import ThreadRecord, ThreadUsage
from thread_runtime.retry import default_retry_kwargs


def _segment(value: str) -> str:
    return quote(value, safe="")


class HttpPersistenceGateway:
    """Remote thread store reached over HTTP.

    Transport-level failures are retried; any HTTP status, including 5xx, is
    mapped to the runtime error taxonomy without a retry.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str | None,
        *,
        api_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
        retries: int = 3,
        max_retry_wait: float = 8.0,
    ):
        headers: dict[str, str] = {"Accept": "application/json"}
        if user_id:
            headers["X-User-Id"] = user_id
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._retry_kwargs = default_retry_kwargs((httpx.TransportError,), attempts=retries, max_wait=max_retry_wait)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def list_threads(self, *, limit: int | None = None) -> list[ThreadRecord]:
        params = {"limit": str(limit)} if limit else None
        body = await self._request("GET", "/threads", params=params)
        return [ThreadRecord.from_dict(t) for t in body.get("threads", [])]

    async def create_thread(
        self,
        *,
        title: str | None = None,
        initial_user_message: dict | None = None,
        model_selection: ModelSelection | None = None,
    ) -> ThreadRecord:
        body = create_thread_body(title, initial_user_message, model_selection)
        return thread_from_body(await self._request("POST", "/threads", json=body))

    async def get_thread(self, thread_id: str) -> ThreadRecord:
        return thread_from_body(await self._request("GET", f"/threads/{_segment(thread_id)}"))

    async def delete_thread(self, thread_id: str) -> None:
        await self._request("DELETE", f"/threads/{_segment(thread_id)}")

    async def update_thread(
        self,
        thread_id: str,
        *,
        model_selection: ModelSelection | None = None,
        title: str | None = None,
    ) -> ThreadRecord:
        body = update_thread_body(model_selection, title)
        return thread_from_body(await self._request("PATCH", f"/threads/{_segment(thread_id)}", json=body))

    async def upsert_message(
        self,
        thread_id: str,
        message: dict,
        *,
        model_selection: ModelSelection | None = None,
        usage: ThreadUsage | None = None,
    ) -> ThreadRecord:
        body = upsert_message_body(message, model_selection, usage)
        return thread_from_body(await self._request("POST", f"/threads/{_segment(thread_id)}/messages", json=body))

    async def edit_message(self, thread_id: str, message_id: str, message: dict) -> ThreadRecord:
        path = f"/threads/{_segment(thread_id)}/messages/{_segment(message_id)}"
        body = await self._request("PATCH", path, json={"message": message})
        return thread_from_body(body)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict[str, str] | None = None,
    ) -> dict:
        url = f"{self._base_url}{path}"
        try:
            async for attempt in AsyncRetrying(**self._retry_kwargs):
                with attempt:
                    response = await self._client.request(
                        method,
                        url,
                        json=json,
                        params=params,
                        headers=self._headers,
                    )
        except httpx.TransportError as exc:
            logger.error(f"{method} {path} failed: {type(exc).__name__}: {exc}")
            raise PersistenceFailure(f"{method} {path} failed: {exc}", cause=exc) from exc

        logger.debug(f"{method} {path} -> {response.status_code}")
        return unwrap_response(response.status_code, self._json(response))

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"error": response.text or response.reason_phrase}
