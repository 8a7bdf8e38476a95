from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from thread_runtime.messages import TOOL_PART_TYPE
from thread_runtime.models import MessageRecord

COMPACTION_TOOL_NAME = "AutoCompactHistory"

Summarizer = Callable[[list[MessageRecord]], dict[str, Any]]


@dataclass(frozen=True)
class CompactionPolicy:
    max_context_tokens: int
    reserved_output_tokens: int = 0


def message_parts_to_text(message: dict[str, Any]) -> str:
    texts: list[str] = []
    for part in message.get("parts", []):
        part_type = part.get("type")
        if part_type in ("text", "reasoning") and isinstance(part.get("text"), str):
            texts.append(part["text"])
        elif part_type == TOOL_PART_TYPE:
            for key in ("input", "output"):
                value = part.get(key)
                if isinstance(value, str):
                    texts.append(value)
                elif value is not None:
                    texts.append(json.dumps(value, ensure_ascii=True))
    return "\n".join(texts)


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    return sum(len(message_parts_to_text(m)) for m in messages) // 4


def estimate_context_size(history: list[MessageRecord]) -> int:
    return estimate_tokens([r.message for r in history if r.is_live])


def should_compact(active_history: list[MessageRecord], policy: CompactionPolicy) -> bool:
    used = estimate_context_size(active_history)
    return used + policy.reserved_output_tokens > policy.max_context_tokens


def default_summarizer(history: list[MessageRecord]) -> dict[str, Any]:
    """Keep the tail of the concatenated text of the compacted turns."""
    lines = []
    for record in history:
        text = " ".join(
            str(p.get("text", "")) for p in record.message.get("parts", []) if p.get("type") == "text"
        ).strip()
        if text:
            lines.append(text)
    summary = "\n".join(lines)[-4000:]
    return {
        "id": f"summary-{uuid4().hex}",
        "role": "user",
        "parts": [{"type": "text", "text": summary or "Conversation summary."}],
    }


def build_summary_message(summary: dict[str, Any]) -> dict[str, Any]:
    """Wrap a summary as an assistant tool step so it renders like any other tool call."""
    parts: list[str] = []
    for part in summary.get("parts", []):
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            parts.append(part["text"])
        else:
            parts.append(json.dumps(part, ensure_ascii=True))
    summary_text = "\n".join(parts).strip() or "Conversation summary."

    return {
        "id": str(uuid4()),
        "role": "assistant",
        "parts": [
            {
                "type": TOOL_PART_TYPE,
                "toolName": COMPACTION_TOOL_NAME,
                "toolCallId": str(uuid4()),
                "state": "output-available",
                "input": {"reason": "Context window limit exceeded"},
                "output": {"summary": summary_text},
            }
        ],
    }
