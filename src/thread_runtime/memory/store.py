from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class MemoryStore:
    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        return self._conn.executemany(query, seq_of_params)

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                model_selection_json TEXT NOT NULL,
                last_ordinal INTEGER NOT NULL DEFAULT 0,
                last_compaction_ordinal INTEGER NULL,
                context_size INTEGER NOT NULL DEFAULT 0,
                usage_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                message_id TEXT NOT NULL,
                ordinal INTEGER NOT NULL CHECK (ordinal >= 1),
                version INTEGER NOT NULL DEFAULT 1,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                message_json TEXT NOT NULL,
                usage_json TEXT NOT NULL DEFAULT '{}',
                model_selection_json TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                deleted_at TEXT NULL,
                error TEXT NULL,
                UNIQUE(thread_id, ordinal)
            );

            CREATE TABLE IF NOT EXISTS events (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL REFERENCES threads(id) ON DELETE CASCADE,
                type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_live_message_id
                ON messages(thread_id, message_id) WHERE deleted_at IS NULL;
            CREATE INDEX IF NOT EXISTS idx_messages_thread_ordinal
                ON messages(thread_id, ordinal);
            CREATE INDEX IF NOT EXISTS idx_threads_user_updated
                ON threads(user_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_events_thread_created
                ON events(thread_id, created_at);
            """
        )
        self._conn.commit()
