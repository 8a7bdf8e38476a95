from __future__ import annotations

import json
from dataclasses import dataclass
from uuid import uuid4

from loguru import logger

from thread_runtime.catalog.selection import ModelSelection, parse_model_selection
from thread_runtime.memory.compaction import (
    CompactionPolicy,
    Summarizer,
    build_summary_message,
    default_summarizer,
    estimate_context_size,
    should_compact,
)
from thread_runtime.memory.events import EventEmitter, utc_now
from thread_runtime.memory.store import MemoryStore
from thread_runtime.messages import validate_message
from thread_runtime.models import MessageRecord, ThreadRecord, ThreadUsage
from thread_runtime.usage import PricingCalculator, aggregate_thread_usage, resolve_message_cost

DEFAULT_TITLE = "New chat"


@dataclass(frozen=True)
class CompactionResult:
    did_compact: bool
    thread: ThreadRecord


class ThreadStore:
    """Durable thread/message storage with gateway-assigned ordinals.

    Ordinals come from ``threads.last_ordinal`` and are never handed out
    twice, not even after a truncation hard-deletes the tail of a thread.
    """

    def __init__(
        self,
        store: MemoryStore,
        events: EventEmitter,
        *,
        pricing_calculator: PricingCalculator | None = None,
    ):
        self._store = store
        self._events = events
        self._pricing_calculator = pricing_calculator

    def create_thread(
        self,
        user_id: str,
        model_selection: ModelSelection,
        *,
        thread_id: str | None = None,
        title: str | None = None,
        created_at: str | None = None,
    ) -> ThreadRecord:
        if not user_id:
            raise ValueError("user_id is required")
        self._require_selection(model_selection)
        tid = thread_id or str(uuid4())
        now = created_at or utc_now()
        with self._store.transaction():
            if self._thread_row(tid) is not None:
                raise ValueError(f"Thread already exists: {tid}")
            self._store.execute(
                """
                INSERT INTO threads (id, user_id, title, model_selection_json, usage_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tid,
                    user_id,
                    (title or "").strip() or DEFAULT_TITLE,
                    json.dumps(model_selection.to_dict()),
                    json.dumps(ThreadUsage().to_dict()),
                    now,
                    now,
                ),
            )
            self._events.emit(tid, "thread.created", {"thread_id": tid, "user_id": user_id})
        logger.debug(f"Created thread {tid} for {user_id}")
        return self._require_thread(tid)

    def get_thread(self, thread_id: str, *, with_history: bool = True) -> ThreadRecord | None:
        row = self._thread_row(thread_id)
        if row is None:
            return None
        return self._to_thread(row, with_history=with_history)

    def list_threads(
        self,
        *,
        user_id: str | None = None,
        include_deleted: bool = False,
        limit: int | None = None,
    ) -> list[ThreadRecord]:
        clauses: list[str] = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit if limit and limit > 0 else -1)
        rows = self._store.execute(
            f"SELECT * FROM threads {where} ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            tuple(params),
        ).fetchall()
        return [self._to_thread(row, with_history=False) for row in rows]

    def upsert_message(
        self,
        thread_id: str,
        message: dict,
        *,
        model_selection: ModelSelection,
        usage: ThreadUsage | None = None,
        error: str | None = None,
        now: str | None = None,
    ) -> ThreadRecord | None:
        """Append ``message`` or overwrite the live record with the same message id.

        Overwriting keeps the record id and ordinal and bumps its version.
        ``usage`` replaces the stored usage when given; otherwise the existing
        usage is kept (or zeroed for a new record).
        """
        validate_message(message)
        self._require_selection(model_selection)
        with self._store.transaction():
            if self._thread_row(thread_id) is None:
                return None
            self._upsert_locked(thread_id, message, model_selection, usage, error, now or utc_now())
            self._refresh_aggregates(thread_id, now)
        return self._require_thread(thread_id)

    def truncate_after(self, thread_id: str, ordinal: int, *, now: str | None = None) -> ThreadRecord | None:
        with self._store.transaction():
            if self._thread_row(thread_id) is None:
                return None
            removed = self._truncate_locked(thread_id, ordinal)
            self._refresh_aggregates(thread_id, now)
        logger.debug(f"Truncated {removed} record(s) after ordinal {ordinal} in thread {thread_id}")
        return self._require_thread(thread_id)

    def edit_and_truncate(
        self,
        thread_id: str,
        message_id: str,
        message: dict,
        *,
        now: str | None = None,
    ) -> ThreadRecord | None:
        """Overwrite a live user message in place, then drop every later record.

        Raises ``LookupError`` when ``message_id`` is not a live user message.
        """
        validate_message(message)
        if message["id"] != message_id:
            raise ValueError("message.id does not match the edited message id")
        with self._store.transaction():
            thread_row = self._thread_row(thread_id)
            if thread_row is None:
                return None
            row = self._live_message_row(thread_id, message_id)
            if row is None or row["role"] != "user":
                raise LookupError(f"Message not found: {message_id}")
            if message["role"] != "user":
                raise ValueError("An edited user message must keep the user role")
            selection = self._parse_selection_json(thread_row["model_selection_json"])
            self._upsert_locked(thread_id, message, selection, None, None, now or utc_now())
            self._truncate_locked(thread_id, int(row["ordinal"]))
            self._refresh_aggregates(thread_id, now)
        return self._require_thread(thread_id)

    def soft_delete_thread(self, thread_id: str, *, deleted_at: str | None = None) -> bool:
        with self._store.transaction():
            row = self._thread_row(thread_id)
            if row is None:
                return False
            if row["deleted_at"] is not None:
                return True
            stamp = deleted_at or utc_now()
            self._store.execute(
                "UPDATE threads SET deleted_at = ?, updated_at = ? WHERE id = ?",
                (stamp, utc_now(), thread_id),
            )
            self._store.execute(
                "UPDATE messages SET deleted_at = ? WHERE thread_id = ? AND deleted_at IS NULL",
                (stamp, thread_id),
            )
            self._events.emit(thread_id, "thread.deleted", {"thread_id": thread_id})
        return True

    def update_thread_settings(
        self,
        thread_id: str,
        *,
        title: str | None = None,
        model_selection: ModelSelection | None = None,
        now: str | None = None,
    ) -> ThreadRecord | None:
        if model_selection is not None:
            self._require_selection(model_selection)
        with self._store.transaction():
            row = self._thread_row(thread_id)
            if row is None:
                return None
            next_title = ((title or "").strip() or DEFAULT_TITLE) if title is not None else row["title"]
            next_selection = (
                json.dumps(model_selection.to_dict()) if model_selection is not None else row["model_selection_json"]
            )
            self._store.execute(
                "UPDATE threads SET title = ?, model_selection_json = ?, updated_at = ? WHERE id = ?",
                (next_title, next_selection, now or utc_now(), thread_id),
            )
            self._events.emit(
                thread_id,
                "thread.settings_updated",
                {"thread_id": thread_id, "title": next_title, "model_selection": json.loads(next_selection)},
            )
        return self._require_thread(thread_id)

    def compact_if_needed(
        self,
        thread_id: str,
        policy: CompactionPolicy,
        *,
        summarize: Summarizer = default_summarizer,
        now: str | None = None,
    ) -> CompactionResult | None:
        thread = self.get_thread(thread_id)
        if thread is None:
            return None
        active = thread.active_history()
        if not active or not should_compact(active, policy):
            return CompactionResult(did_compact=False, thread=thread)

        summary = build_summary_message(summarize(active))
        stamp = now or utc_now()
        with self._store.transaction():
            row = self._thread_row(thread_id)
            latest_ordinal = int(row["last_ordinal"])
            self._upsert_locked(thread_id, summary, thread.model_selection, ThreadUsage(), None, stamp)
            self._store.execute(
                "UPDATE threads SET last_compaction_ordinal = ? WHERE id = ?",
                (latest_ordinal, thread_id),
            )
            self._refresh_aggregates(thread_id, stamp)
            self._events.emit(
                thread_id,
                "thread.compacted",
                {"thread_id": thread_id, "compacted_through": latest_ordinal, "records": len(active)},
            )
        logger.info(f"Compacted {len(active)} record(s) in thread {thread_id} through ordinal {latest_ordinal}")
        return CompactionResult(did_compact=True, thread=self._require_thread(thread_id))

    def rebuild_active_history(self, thread_id: str, *, now: str | None = None) -> ThreadRecord | None:
        with self._store.transaction():
            if self._thread_row(thread_id) is None:
                return None
            self._store.execute(
                "UPDATE threads SET last_compaction_ordinal = NULL WHERE id = ?",
                (thread_id,),
            )
            self._refresh_aggregates(thread_id, now)
        return self._require_thread(thread_id)

    def _upsert_locked(
        self,
        thread_id: str,
        message: dict,
        model_selection: ModelSelection,
        usage: ThreadUsage | None,
        error: str | None,
        now: str,
    ) -> None:
        message_id = message["id"]
        selection_json = json.dumps(model_selection.to_dict())
        existing = self._live_message_row(thread_id, message_id)

        if existing is not None:
            resolved_usage = (
                self._priced(usage, model_selection)
                if usage is not None
                else ThreadUsage.from_dict(json.loads(existing["usage_json"]))
            )
            self._store.execute(
                """
                UPDATE messages
                SET message_json = ?, role = ?, usage_json = ?, model_selection_json = ?,
                    version = version + 1, updated_at = ?, error = ?
                WHERE id = ?
                """,
                (
                    json.dumps(message, ensure_ascii=True),
                    message["role"],
                    json.dumps(resolved_usage.to_dict()),
                    selection_json,
                    now,
                    error if error is not None else existing["error"],
                    existing["id"],
                ),
            )
            record_id, ordinal = existing["id"], int(existing["ordinal"])
        else:
            row = self._thread_row(thread_id)
            ordinal = int(row["last_ordinal"]) + 1
            record_id = str(uuid4())
            resolved_usage = self._priced(usage, model_selection) if usage is not None else ThreadUsage()
            self._store.execute(
                """
                INSERT INTO messages (
                    id, thread_id, message_id, ordinal, version, role, message_json,
                    usage_json, model_selection_json, created_at, updated_at, error
                )
                VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    thread_id,
                    message_id,
                    ordinal,
                    message["role"],
                    json.dumps(message, ensure_ascii=True),
                    json.dumps(resolved_usage.to_dict()),
                    selection_json,
                    now,
                    now,
                    error,
                ),
            )
            self._store.execute(
                "UPDATE threads SET last_ordinal = ? WHERE id = ?",
                (ordinal, thread_id),
            )

        self._events.emit(
            thread_id,
            "message.upserted",
            {
                "thread_id": thread_id,
                "record_id": record_id,
                "message_id": message_id,
                "ordinal": ordinal,
                "role": message["role"],
                "updated": existing is not None,
            },
        )

    def _truncate_locked(self, thread_id: str, ordinal: int) -> int:
        cursor = self._store.execute(
            "DELETE FROM messages WHERE thread_id = ? AND ordinal > ?",
            (thread_id, ordinal),
        )
        removed = cursor.rowcount
        self._store.execute(
            """
            UPDATE threads
            SET last_compaction_ordinal = NULL
            WHERE id = ? AND last_compaction_ordinal IS NOT NULL AND last_compaction_ordinal >= ?
            """,
            (thread_id, ordinal),
        )
        self._events.emit(
            thread_id,
            "thread.truncated",
            {"thread_id": thread_id, "after_ordinal": ordinal, "removed": removed},
        )
        return removed

    def _refresh_aggregates(self, thread_id: str, now: str | None) -> None:
        thread = self._to_thread(self._thread_row(thread_id), with_history=True)
        self._store.execute(
            "UPDATE threads SET usage_json = ?, context_size = ?, updated_at = ? WHERE id = ?",
            (
                json.dumps(aggregate_thread_usage(thread.history).to_dict()),
                estimate_context_size(thread.active_history()),
                now or utc_now(),
                thread_id,
            ),
        )

    def _priced(self, usage: ThreadUsage, model_selection: ModelSelection) -> ThreadUsage:
        if usage.total_cost_usd > 0 or (usage.input_tokens == 0 and usage.output_tokens == 0):
            return usage
        cost = resolve_message_cost(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            model_id=model_selection.model_id,
            pricing_calculator=self._pricing_calculator,
        )
        return ThreadUsage(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_duration_ms=usage.total_duration_ms,
            total_cost_usd=cost,
        )

    def _thread_row(self, thread_id: str):
        return self._store.execute("SELECT * FROM threads WHERE id = ? LIMIT 1", (thread_id,)).fetchone()

    def _live_message_row(self, thread_id: str, message_id: str):
        return self._store.execute(
            "SELECT * FROM messages WHERE thread_id = ? AND message_id = ? AND deleted_at IS NULL LIMIT 1",
            (thread_id, message_id),
        ).fetchone()

    def _require_thread(self, thread_id: str) -> ThreadRecord:
        thread = self.get_thread(thread_id)
        if thread is None:
            raise ValueError(f"Thread does not exist: {thread_id}")
        return thread

    def _require_selection(self, model_selection: ModelSelection | None) -> None:
        if model_selection is None or model_selection.is_empty:
            raise ValueError("A resolved model selection is required")

    def _parse_selection_json(self, raw: str | None) -> ModelSelection | None:
        if not raw:
            return None
        try:
            return parse_model_selection(json.loads(raw))
        except json.JSONDecodeError:
            return None

    def _to_thread(self, row, *, with_history: bool) -> ThreadRecord:
        history: tuple[MessageRecord, ...] = ()
        if with_history:
            rows = self._store.execute(
                "SELECT * FROM messages WHERE thread_id = ? ORDER BY ordinal ASC",
                (row["id"],),
            ).fetchall()
            history = tuple(self._to_message(r) for r in rows)

        selection = self._parse_selection_json(row["model_selection_json"])
        if selection is None:
            raise ValueError(f"Thread {row['id']} has an invalid persisted model selection")
        return ThreadRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            model_selection=selection,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            history=history,
            last_compaction_ordinal=row["last_compaction_ordinal"],
            context_size=int(row["context_size"]),
            usage=ThreadUsage.from_dict(json.loads(row["usage_json"] or "{}")),
            deleted_at=row["deleted_at"],
        )

    def _to_message(self, row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            ordinal=int(row["ordinal"]),
            version=int(row["version"]),
            message=json.loads(row["message_json"]),
            usage=ThreadUsage.from_dict(json.loads(row["usage_json"] or "{}")),
            model_selection=self._parse_selection_json(row["model_selection_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
            error=row["error"],
        )
