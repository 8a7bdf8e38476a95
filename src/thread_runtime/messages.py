from __future__ import annotations

import copy
from typing import Any
from uuid import uuid4

ROLES = ("user", "assistant", "system")

TOOL_PART_TYPE = "dynamic-tool"


def new_user_message(text: str, *, message_id: str | None = None, metadata: dict | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {
        "id": message_id or str(uuid4()),
        "role": "user",
        "parts": [{"type": "text", "text": text}],
    }
    if metadata:
        message["metadata"] = dict(metadata)
    return message


def validate_message(message: Any) -> dict[str, Any]:
    if not isinstance(message, dict):
        raise ValueError("message must be an object")
    if not isinstance(message.get("id"), str) or not message["id"]:
        raise ValueError("message.id must be a non-empty string")
    if message.get("role") not in ROLES:
        raise ValueError(f"message.role must be one of {', '.join(ROLES)}")
    parts = message.get("parts")
    if not isinstance(parts, list) or any(not isinstance(p, dict) or not p.get("type") for p in parts):
        raise ValueError("message.parts must be a list of typed parts")
    return message


def copy_message(message: dict[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(message)


def message_text(message: dict[str, Any]) -> str:
    return "\n".join(
        str(part.get("text", "")) for part in message.get("parts", []) if part.get("type") == "text"
    ).strip()


def is_tool_part(part: dict[str, Any]) -> bool:
    part_type = str(part.get("type", ""))
    return part_type == TOOL_PART_TYPE or part_type.startswith("tool-")


def is_pending_message(message: dict[str, Any]) -> bool:
    metadata = message.get("metadata")
    return isinstance(metadata, dict) and metadata.get("pending") is True


def clear_pending_flag(message: dict[str, Any]) -> dict[str, Any]:
    metadata = message.get("metadata")
    if not isinstance(metadata, dict) or "pending" not in metadata:
        return message
    cleared = dict(message)
    cleared["metadata"] = {k: v for k, v in metadata.items() if k != "pending"}
    return cleared
