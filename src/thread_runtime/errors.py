from __future__ import annotations

from typing import Any


class ThreadRuntimeError(Exception):
    """Base class for every error the runtime surfaces to its callers."""

    status_code = 500

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.__cause__ = cause


class Unauthorized(ThreadRuntimeError):
    status_code = 401


class InvalidRequest(ThreadRuntimeError):
    status_code = 400


class NotFound(ThreadRuntimeError):
    status_code = 404


class ThreadNotFound(NotFound):
    pass


class MessageNotFound(NotFound):
    pass


class InvalidOperation(ThreadRuntimeError):
    status_code = 409


class PersistenceFailure(ThreadRuntimeError):
    """A write to the gateway failed after the content was produced.

    ``unsaved_message`` keeps the generated message so the caller can show it
    and retry the write later.
    """

    status_code = 503

    def __init__(
        self,
        message: str,
        *,
        unsaved_message: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, cause=cause)
        self.unsaved_message = unsaved_message


class ProtocolViolation(ThreadRuntimeError):
    """Recorded by the stream processor for an out-of-order or unmatched event.

    Never raised out of the processor; the offending event is dropped.
    """

    status_code = 422

    def __init__(self, message: str, *, event: dict[str, Any] | None = None):
        super().__init__(message)
        self.event = event


def error_for_status(status_code: int, message: str, *, message_route: bool = False) -> ThreadRuntimeError:
    if status_code == 401:
        return Unauthorized(message)
    if status_code == 400:
        return InvalidRequest(message)
    if status_code == 404:
        return MessageNotFound(message) if message_route else ThreadNotFound(message)
    if status_code == 409:
        return InvalidOperation(message)
    return PersistenceFailure(message)
