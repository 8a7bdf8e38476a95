from thread_runtime.stream.processor import (
    ERROR,
    IDLE,
    READY,
    STREAMING,
    SUBMITTED,
    StreamChunkProcessor,
)
from thread_runtime.stream.sse import iter_sse_events
from thread_runtime.stream.transport import ChatRequest, ChatTransport, HttpChatTransport

__all__ = [
    "ERROR",
    "IDLE",
    "READY",
    "STREAMING",
    "SUBMITTED",
    "ChatRequest",
    "ChatTransport",
    "HttpChatTransport",
    "StreamChunkProcessor",
    "iter_sse_events",
]
