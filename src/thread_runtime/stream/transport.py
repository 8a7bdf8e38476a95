from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from loguru import logger
from tenacity import AsyncRetrying

from thread_runtime.catalog.selection import ModelSelection
from thread_runtime.retry import default_retry_kwargs
from thread_runtime.stream.sse import iter_sse_events

TRIGGERS = ("submit-message", "regenerate-message")


@dataclass(frozen=True)
class ChatRequest:
    id: str
    thread_id: str
    messages: list[dict]
    model_selection: ModelSelection
    trigger: str = "submit-message"
    message_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.trigger not in TRIGGERS:
            raise ValueError(f"Unknown chat trigger: {self.trigger}")

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": self.id,
            "threadId": self.thread_id,
            "messages": self.messages,
            "modelSelection": self.model_selection.to_dict(),
            "trigger": self.trigger,
            "messageId": self.message_id,
        }
        body.update(self.extra)
        return body


class ChatTransport(Protocol):
    def stream(self, request: ChatRequest) -> AsyncIterator[dict]: ...


def error_event(error_text: str) -> dict:
    return {"type": "error", "errorText": error_text}


class HttpChatTransport:
    """POSTs a chat request and yields the decoded stream events.

    Failures never raise out of ``stream``: they surface as a final ``error``
    event so the turn can finish normally.
    """

    def __init__(
        self,
        base_url: str,
        endpoint: str = "/agent/chat",
        *,
        user_id: str | None = None,
        api_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
        retries: int = 3,
        max_retry_wait: float = 8.0,
    ):
        self._url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        headers = {"Accept": "text/event-stream"}
        if user_id:
            headers["X-User-Id"] = user_id
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._headers = headers
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._retry_kwargs = default_retry_kwargs((httpx.TransportError,), attempts=retries, max_wait=max_retry_wait)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def stream(self, request: ChatRequest) -> AsyncIterator[dict]:
        try:
            response = await self._open(request)
        except httpx.HTTPError as exc:
            logger.error(f"Chat request failed: {type(exc).__name__}: {exc}")
            yield error_event(f"Chat request failed: {exc}")
            return

        try:
            if response.status_code >= 400:
                detail = (await response.aread()).decode("utf-8", errors="replace")
                logger.error(f"Chat request rejected with {response.status_code}: {detail[:200]}")
                yield error_event(f"Chat request failed with status {response.status_code}")
                return
            async for event in iter_sse_events(response.aiter_lines()):
                yield event
        except httpx.HTTPError as exc:
            logger.error(f"Chat stream interrupted: {type(exc).__name__}: {exc}")
            yield error_event(f"Chat stream interrupted: {exc}")
        finally:
            await response.aclose()

    async def _open(self, request: ChatRequest) -> httpx.Response:
        http_request = self._client.build_request("POST", self._url, json=request.to_dict(), headers=self._headers)
        async for attempt in AsyncRetrying(**self._retry_kwargs):
            with attempt:
                logger.debug(f"Opening chat stream for thread {request.thread_id} ({request.trigger})")
                response = await self._client.send(http_request, stream=True)
        return response
