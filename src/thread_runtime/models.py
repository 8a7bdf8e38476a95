from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from thread_runtime.catalog.selection import ModelSelection, parse_model_selection


@dataclass(frozen=True)
class ThreadUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_duration_ms: int = 0
    total_cost_usd: float = 0.0

    def __post_init__(self) -> None:
        for name in ("input_tokens", "output_tokens", "total_duration_ms", "total_cost_usd"):
            if getattr(self, name) < 0:
                raise ValueError(f"ThreadUsage.{name} must be non-negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalDurationMs": self.total_duration_ms,
            "totalCostUsd": self.total_cost_usd,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ThreadUsage:
        data = data or {}
        return cls(
            input_tokens=int(data.get("inputTokens") or 0),
            output_tokens=int(data.get("outputTokens") or 0),
            total_duration_ms=int(data.get("totalDurationMs") or 0),
            total_cost_usd=float(data.get("totalCostUsd") or 0.0),
        )


@dataclass(frozen=True)
class MessageRecord:
    id: str
    ordinal: int
    version: int
    message: dict[str, Any]
    usage: ThreadUsage
    model_selection: ModelSelection | None
    created_at: str
    updated_at: str
    deleted_at: str | None = None
    error: str | None = None

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    @property
    def message_id(self) -> str:
        return str(self.message.get("id", ""))

    @property
    def role(self) -> str:
        return str(self.message.get("role", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ordinal": self.ordinal,
            "version": self.version,
            "message": self.message,
            "usage": self.usage.to_dict(),
            "modelSelection": self.model_selection.to_dict() if self.model_selection else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "deletedAt": self.deleted_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageRecord:
        return cls(
            id=str(data["id"]),
            ordinal=int(data["ordinal"]),
            version=int(data.get("version", 1)),
            message=dict(data["message"]),
            usage=ThreadUsage.from_dict(data.get("usage")),
            model_selection=parse_model_selection(data.get("modelSelection")),
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
            deleted_at=data.get("deletedAt"),
            error=data.get("error"),
        )


def live_transcript(history: tuple[MessageRecord, ...] | list[MessageRecord]) -> list[MessageRecord]:
    """The authoritative conversation order: live records sorted by ordinal."""
    return sorted((r for r in history if r.is_live), key=lambda r: r.ordinal)


def derive_active_history(
    history: tuple[MessageRecord, ...] | list[MessageRecord],
    last_compaction_ordinal: int | None,
) -> list[MessageRecord]:
    """Live records after the compaction boundary, in ordinal order."""
    boundary = last_compaction_ordinal or 0
    return [r for r in live_transcript(history) if r.ordinal > boundary]


@dataclass(frozen=True)
class ThreadRecord:
    id: str
    user_id: str
    title: str
    model_selection: ModelSelection
    created_at: str
    updated_at: str
    history: tuple[MessageRecord, ...] = field(default_factory=tuple)
    last_compaction_ordinal: int | None = None
    context_size: int = 0
    usage: ThreadUsage = field(default_factory=ThreadUsage)
    deleted_at: str | None = None

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    def live_history(self) -> list[MessageRecord]:
        return live_transcript(self.history)

    def active_history(self) -> list[MessageRecord]:
        return derive_active_history(self.history, self.last_compaction_ordinal)

    def find_live(self, message_id: str) -> MessageRecord | None:
        for record in self.history:
            if record.is_live and record.message_id == message_id:
                return record
        return None

    def without_history(self) -> ThreadRecord:
        return replace(self, history=())

    def to_dict(self, *, include_history: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "modelSelection": self.model_selection.to_dict(),
            "lastCompactionOrdinal": self.last_compaction_ordinal,
            "contextSize": self.context_size,
            "usage": self.usage.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "deletedAt": self.deleted_at,
        }
        if include_history:
            data["history"] = [r.to_dict() for r in self.history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThreadRecord:
        selection = parse_model_selection(data.get("modelSelection"))
        if selection is None:
            raise ValueError(f"Thread {data.get('id')!r} has an invalid modelSelection")
        return cls(
            id=str(data["id"]),
            user_id=str(data["userId"]),
            title=str(data.get("title", "")),
            model_selection=selection,
            created_at=str(data.get("createdAt", "")),
            updated_at=str(data.get("updatedAt", "")),
            history=tuple(MessageRecord.from_dict(r) for r in data.get("history") or []),
            last_compaction_ordinal=data.get("lastCompactionOrdinal"),
            context_size=int(data.get("contextSize") or 0),
            usage=ThreadUsage.from_dict(data.get("usage")),
            deleted_at=data.get("deletedAt"),
        )
