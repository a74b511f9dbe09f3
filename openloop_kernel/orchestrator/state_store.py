"""
Persisted orchestrator state: a single JSON row.

Ticks may overlap, so writers go through `update`, which reads and rewrites
the row inside one immediate transaction.
"""

import sqlite3
import threading
from typing import Callable

from openloop_kernel.models.orchestrator import OrchestratorState
from openloop_kernel.storage.sqlite import immediate_transaction, open_connection
from openloop_kernel.timeutil import format_ts, utcnow


class OrchestratorStateStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = open_connection(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS orchestrator_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                state_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

    @staticmethod
    def _read(conn: sqlite3.Connection) -> OrchestratorState:
        row = conn.execute("SELECT state_json FROM orchestrator_state WHERE id = 1").fetchone()
        if row is None:
            return OrchestratorState()
        return OrchestratorState.model_validate_json(row["state_json"])

    @staticmethod
    def _write(conn: sqlite3.Connection, state: OrchestratorState) -> None:
        conn.execute(
            "INSERT INTO orchestrator_state (id, state_json, updated_at) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET state_json = excluded.state_json, "
            "updated_at = excluded.updated_at",
            (state.model_dump_json(), format_ts(utcnow())),
        )

    def load(self) -> OrchestratorState:
        with self._lock:
            return self._read(self._conn)

    def save(self, state: OrchestratorState) -> OrchestratorState:
        """Overwrite the row. Only for callers that own the state outright."""
        with immediate_transaction(self._conn, self._lock) as conn:
            self._write(conn, state)
        return state

    def update(self, fn: Callable[[OrchestratorState], OrchestratorState]) -> OrchestratorState:
        """Apply `fn` to the stored state and persist the result atomically."""
        with immediate_transaction(self._conn, self._lock) as conn:
            state = fn(self._read(conn))
            self._write(conn, state)
        return state

    def close(self) -> None:
        self._conn.close()
