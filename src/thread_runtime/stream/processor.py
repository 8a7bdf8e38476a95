"""Folds the ordered stream events of one turn into a single assistant message.

The processor never raises for a malformed stream. Events that reference a
part that was never opened, arrive out of order, or arrive after the turn
reached a terminal status are recorded as ``ProtocolViolation`` and dropped.
Event types it does not know are kept verbatim in ``opaque_events``.
"""

from __future__ import annotations

import copy
from typing import Any
from uuid import uuid4

from loguru import logger

from thread_runtime.errors import ProtocolViolation
from thread_runtime.messages import TOOL_PART_TYPE

IDLE = "idle"
SUBMITTED = "submitted"
STREAMING = "streaming"
READY = "ready"
ERROR = "error"

TERMINAL_STATUSES = frozenset({READY, ERROR})
ACTIVE_STATUSES = frozenset({SUBMITTED, STREAMING})

_TOOL_AWAITING_OUTPUT = ("input-available", "approval-requested")


def _token_count(usage: Any, key: str) -> int:
    if not isinstance(usage, dict):
        return 0
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        return 0
    return int(value)


class StreamChunkProcessor:
    def __init__(self, *, message_id: str | None = None, metadata: dict | None = None):
        self._status = IDLE
        self._message_id = message_id
        self._metadata: dict[str, Any] = dict(metadata or {})
        self._parts: list[dict[str, Any]] = []
        self._open_parts: dict[tuple[str, str], dict[str, Any]] = {}
        self._tools: dict[str, dict[str, Any]] = {}
        self._step_input_tokens = 0
        self._step_output_tokens = 0
        self._final_usage: tuple[int, int] | None = None
        self._steps = 0
        self._fallback_id = str(uuid4())

        self.opaque_events: list[dict[str, Any]] = []
        self.violations: list[ProtocolViolation] = []
        self.finish_reason: str | None = None
        self.abort_reason: str | None = None
        self.error_text: str | None = None

        self._handlers = {
            "start": self._on_start,
            "start-step": self._on_start_step,
            "text-start": self._on_part_start,
            "text-delta": self._on_part_delta,
            "text-end": self._on_part_end,
            "reasoning-start": self._on_part_start,
            "reasoning-delta": self._on_part_delta,
            "reasoning-end": self._on_part_end,
            "tool-input-start": self._on_tool_input_start,
            "tool-input-delta": self._on_tool_input_delta,
            "tool-input-available": self._on_tool_input_available,
            "tool-approval-request": self._on_tool_approval_request,
            "tool-output-available": self._on_tool_output,
            "tool-output-error": self._on_tool_output,
            "tool-output-denied": self._on_tool_output,
            "file": self._on_file,
            "source-url": self._on_source,
            "source-document": self._on_source,
            "message-metadata": self._on_message_metadata,
            "finish-step": self._on_finish_step,
            "finish": self._on_finish,
            "abort": self._on_abort,
            "error": self._on_error,
        }

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def message_id(self) -> str | None:
        return self._message_id

    @property
    def parts(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._parts)

    @property
    def last_part(self) -> dict[str, Any] | None:
        return self._parts[-1] if self._parts else None

    @property
    def has_content(self) -> bool:
        return bool(self._parts)

    @property
    def usage(self) -> tuple[int, int]:
        """(input tokens, output tokens) for the turn.

        A ``finish`` event that reports usage carries the turn total;
        otherwise the per-step usage reported so far is summed.
        """
        if self._final_usage is not None:
            return self._final_usage
        return self._step_input_tokens, self._step_output_tokens

    def submit(self) -> None:
        if self._status == IDLE:
            self._status = SUBMITTED

    def apply(self, event: Any) -> None:
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            self._violation("event without a type", event)
            return
        if self.is_terminal:
            self._violation(f"'{event['type']}' after the turn finished", event)
            return
        if self._status in (IDLE, SUBMITTED):
            self._status = STREAMING

        handler = self._handlers.get(event["type"])
        if handler is None:
            self.opaque_events.append(copy.deepcopy(event))
            return
        handler(event)

    def stop(self, reason: str = "stopped") -> bool:
        """Close the draft with whatever has been folded so far. Idempotent."""
        if self._status not in ACTIVE_STATUSES:
            return False
        self.abort_reason = reason
        self._close(READY)
        return True

    def message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "id": self._message_id or self._fallback_id,
            "role": "assistant",
            "parts": copy.deepcopy(self._parts),
        }
        if self._metadata:
            message["metadata"] = copy.deepcopy(self._metadata)
        return message

    def _violation(self, reason: str, event: Any) -> None:
        violation = ProtocolViolation(reason, event=event if isinstance(event, dict) else None)
        self.violations.append(violation)
        logger.warning(f"Stream protocol violation: {reason}")

    def _close(self, status: str) -> None:
        for part in self._open_parts.values():
            part["state"] = "done"
        self._open_parts.clear()
        self._status = status

    def _merge_metadata(self, event: dict) -> None:
        metadata = event.get("messageMetadata")
        if isinstance(metadata, dict):
            self._metadata.update(metadata)

    def _on_start(self, event: dict) -> None:
        message_id = event.get("messageId")
        if self._message_id is None and isinstance(message_id, str) and message_id:
            self._message_id = message_id
        self._merge_metadata(event)

    def _on_start_step(self, event: dict) -> None:
        self._steps += 1

    def _part_key(self, event: dict) -> tuple[str, str] | None:
        part_id = event.get("id")
        if not isinstance(part_id, str) or not part_id:
            self._violation(f"'{event['type']}' without an id", event)
            return None
        kind = event["type"].split("-", 1)[0]
        return kind, part_id

    def _on_part_start(self, event: dict) -> None:
        key = self._part_key(event)
        if key is None:
            return
        if key in self._open_parts:
            self._violation(f"'{event['type']}' for already open {key[0]} part {key[1]}", event)
            return
        part = {"type": key[0], "text": "", "state": "streaming"}
        self._parts.append(part)
        self._open_parts[key] = part

    def _on_part_delta(self, event: dict) -> None:
        key = self._part_key(event)
        if key is None:
            return
        part = self._open_parts.get(key)
        if part is None:
            self._violation(f"'{event['type']}' for {key[0]} part {key[1]} that is not open", event)
            return
        delta = event.get("delta")
        if not isinstance(delta, str):
            self._violation(f"'{event['type']}' without a text delta", event)
            return
        part["text"] += delta

    def _on_part_end(self, event: dict) -> None:
        key = self._part_key(event)
        if key is None:
            return
        part = self._open_parts.pop(key, None)
        if part is None:
            self._violation(f"'{event['type']}' for {key[0]} part {key[1]} that is not open", event)
            return
        part["state"] = "done"

    def _tool_call_id(self, event: dict) -> str | None:
        tool_call_id = event.get("toolCallId")
        if not isinstance(tool_call_id, str) or not tool_call_id:
            self._violation(f"'{event['type']}' without a toolCallId", event)
            return None
        return tool_call_id

    def _new_tool_part(self, tool_call_id: str, tool_name: Any) -> dict[str, Any]:
        part: dict[str, Any] = {
            "type": TOOL_PART_TYPE,
            "toolName": tool_name if isinstance(tool_name, str) else "",
            "toolCallId": tool_call_id,
            "state": "input-streaming",
            "input": None,
            "inputText": "",
            "output": None,
            "errorText": None,
        }
        self._parts.append(part)
        self._tools[tool_call_id] = part
        return part

    def _on_tool_input_start(self, event: dict) -> None:
        tool_call_id = self._tool_call_id(event)
        if tool_call_id is None:
            return
        if tool_call_id in self._tools:
            self._violation(f"tool call {tool_call_id} started twice", event)
            return
        self._new_tool_part(tool_call_id, event.get("toolName"))

    def _on_tool_input_delta(self, event: dict) -> None:
        tool_call_id = self._tool_call_id(event)
        if tool_call_id is None:
            return
        part = self._tools.get(tool_call_id)
        if part is None or part["state"] != "input-streaming":
            self._violation(f"input delta for tool call {tool_call_id} that is not streaming input", event)
            return
        delta = event.get("inputTextDelta")
        if not isinstance(delta, str):
            self._violation(f"input delta for tool call {tool_call_id} without text", event)
            return
        part["inputText"] += delta

    def _on_tool_input_available(self, event: dict) -> None:
        tool_call_id = self._tool_call_id(event)
        if tool_call_id is None:
            return
        part = self._tools.get(tool_call_id)
        if part is None:
            part = self._new_tool_part(tool_call_id, event.get("toolName"))
        elif part["state"] != "input-streaming":
            self._violation(f"input for tool call {tool_call_id} already available", event)
            return
        if isinstance(event.get("toolName"), str) and event["toolName"]:
            part["toolName"] = event["toolName"]
        part["input"] = copy.deepcopy(event.get("input"))
        part["state"] = "input-available"

    def _on_tool_approval_request(self, event: dict) -> None:
        tool_call_id = self._tool_call_id(event)
        if tool_call_id is None:
            return
        part = self._tools.get(tool_call_id)
        if part is None or part["state"] != "input-available":
            self._violation(f"approval request for tool call {tool_call_id} without available input", event)
            return
        part["state"] = "approval-requested"
        part["approval"] = {"id": event.get("approvalId")}

    def _on_tool_output(self, event: dict) -> None:
        tool_call_id = self._tool_call_id(event)
        if tool_call_id is None:
            return
        part = self._tools.get(tool_call_id)
        if part is None or part["state"] not in _TOOL_AWAITING_OUTPUT:
            self._violation(f"'{event['type']}' for tool call {tool_call_id} without available input", event)
            return

        event_type = event["type"]
        if event_type == "tool-output-available":
            part["output"] = copy.deepcopy(event.get("output"))
            part["state"] = "output-available"
        elif event_type == "tool-output-error":
            part["errorText"] = str(event.get("errorText") or "Tool execution failed")
            part["state"] = "output-error"
        else:
            part["state"] = "output-denied"

    def _on_file(self, event: dict) -> None:
        if not isinstance(event.get("url"), str):
            self._violation("file event without a url", event)
            return
        self._parts.append({"type": "file", "mediaType": event.get("mediaType"), "url": event["url"]})

    def _on_source(self, event: dict) -> None:
        if not isinstance(event.get("sourceId"), str):
            self._violation(f"'{event['type']}' without a sourceId", event)
            return
        self._parts.append(copy.deepcopy(event))

    def _on_message_metadata(self, event: dict) -> None:
        self._merge_metadata(event)

    def _on_finish_step(self, event: dict) -> None:
        usage = event.get("usage")
        self._step_input_tokens += _token_count(usage, "inputTokens")
        self._step_output_tokens += _token_count(usage, "outputTokens")

    def _on_finish(self, event: dict) -> None:
        self._merge_metadata(event)
        reason = event.get("finishReason")
        self.finish_reason = reason if isinstance(reason, str) else None
        usage = event.get("usage")
        if isinstance(usage, dict):
            self._final_usage = (_token_count(usage, "inputTokens"), _token_count(usage, "outputTokens"))
        self._close(READY)

    def _on_abort(self, event: dict) -> None:
        reason = event.get("reason")
        self.abort_reason = reason if isinstance(reason, str) and reason else "aborted"
        self._close(READY)

    def _on_error(self, event: dict) -> None:
        self.error_text = str(event.get("errorText") or "Stream failed")
        self._close(ERROR)
