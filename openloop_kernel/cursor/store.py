"""
Cursor Store: one extraction watermark per conversation.

Last write wins. Callers serialize work per conversation; the store itself
only guarantees that each set() is atomic.
"""

import sqlite3
import threading
from typing import List, Optional

from openloop_kernel.models.cursor import Cursor
from openloop_kernel.storage.sqlite import open_connection
from openloop_kernel.timeutil import format_ts, parse_ts, utcnow


class CursorStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = open_connection(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS cursors (
                conversation_id TEXT PRIMARY KEY,
                last_processed_ts TEXT,
                last_processed_message_id TEXT,
                last_run_ended_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)

    def _deserialize(self, row: sqlite3.Row) -> Cursor:
        return Cursor(
            conversation_id=row["conversation_id"],
            last_processed_ts=parse_ts(row["last_processed_ts"]),
            last_processed_message_id=row["last_processed_message_id"],
            last_run_ended_at=parse_ts(row["last_run_ended_at"]),
        )

    def get(self, conversation_id: str) -> Optional[Cursor]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM cursors WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def set(self, conversation_id: str, cursor: Cursor) -> Cursor:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO cursors (
                    conversation_id, last_processed_ts, last_processed_message_id,
                    last_run_ended_at, updated_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                    last_processed_ts = excluded.last_processed_ts,
                    last_processed_message_id = excluded.last_processed_message_id,
                    last_run_ended_at = excluded.last_run_ended_at,
                    updated_at = excluded.updated_at
                """,
                (
                    conversation_id,
                    format_ts(cursor.last_processed_ts),
                    cursor.last_processed_message_id,
                    format_ts(cursor.last_run_ended_at),
                    format_ts(utcnow()),
                ),
            )
        return cursor.model_copy(update={"conversation_id": conversation_id})

    def list_all(self) -> List[Cursor]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM cursors ORDER BY conversation_id"
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
