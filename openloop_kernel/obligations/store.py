"""
Obligation Store: persisted obligations plus the extraction run log.

Behavioral Contract:
- One row per obligation id. New sightings are merged into the stored record
  inside a single write transaction, so a concurrent complete/dismiss is
  never overwritten by a stale read.
- User overrides (status, snooze, lane) are written onto the same row.
- The run log is append-only and only read for debugging.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from openloop_kernel.extraction.followups import follow_ups_to_unblock
from openloop_kernel.identity.merge import merge_obligations
from openloop_kernel.models.extraction import ExtractionRun
from openloop_kernel.models.obligation import (
    Lane,
    Obligation,
    ObligationStatus,
    Urgency,
)
from openloop_kernel.storage.sqlite import immediate_transaction, open_connection
from openloop_kernel.timeutil import format_ts, utcnow

logger = logging.getLogger(__name__)


class ObligationNotFoundError(Exception):
    """Raised when an override targets an unknown obligation id."""


class ObligationStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = open_connection(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS obligations (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                urgency TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                snooze_until TEXT,
                lane_override TEXT,
                record_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_obligations_conversation
            ON obligations(conversation_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_obligations_status_seen
            ON obligations(status, last_seen_at)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS extraction_runs (
                run_id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                started_at TEXT NOT NULL,
                has_error INTEGER NOT NULL DEFAULT 0,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_conversation
            ON extraction_runs(conversation_id, started_at)
        """)

    def _deserialize(self, row: sqlite3.Row) -> Obligation:
        return Obligation.model_validate_json(row["record_json"])

    def _write(self, obligation: Obligation) -> None:
        self._conn.execute(
            """
            INSERT INTO obligations (
                id, conversation_id, kind, status, urgency, last_seen_at,
                snooze_until, lane_override, record_json, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                kind = excluded.kind,
                status = excluded.status,
                urgency = excluded.urgency,
                last_seen_at = excluded.last_seen_at,
                snooze_until = excluded.snooze_until,
                lane_override = excluded.lane_override,
                record_json = excluded.record_json,
                updated_at = excluded.updated_at
            """,
            (
                obligation.id,
                obligation.conversation_id,
                obligation.kind.value,
                obligation.status.value,
                obligation.urgency.value,
                format_ts(obligation.last_seen_at),
                format_ts(obligation.snooze_until),
                obligation.lane_override.value if obligation.lane_override else None,
                obligation.model_dump_json(),
                format_ts(utcnow()),
            ),
        )

    def merge_sightings(self, sightings: Iterable[Obligation]) -> List[Obligation]:
        """Merge each sighting into its stored record (or insert it) atomically."""
        sightings = list(sightings)
        merged: Dict[str, Obligation] = {}
        with immediate_transaction(self._conn, self._lock) as conn:
            for sighting in sightings:
                current = merged.get(sighting.id)
                if current is None:
                    row = conn.execute(
                        "SELECT record_json FROM obligations WHERE id = ?", (sighting.id,)
                    ).fetchone()
                    current = self._deserialize(row) if row else None
                merged[sighting.id] = (
                    merge_obligations(current, sighting) if current else sighting
                )
            for obligation in merged.values():
                self._write(obligation)
        return list(merged.values())

    def unblock_dependents(self, conversation_id: str) -> List[Obligation]:
        """Unblock follow-ups whose base obligation is done, against the stored rows."""
        with immediate_transaction(self._conn, self._lock) as conn:
            rows = conn.execute(
                "SELECT record_json FROM obligations WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            ).fetchall()
            unblocked = follow_ups_to_unblock(self._deserialize(r) for r in rows)
            for obligation in unblocked:
                self._write(obligation)
        for obligation in unblocked:
            logger.info("Unblocked follow-up %s in %s", obligation.id, conversation_id)
        return unblocked

    def _update(self, obligation_id: str, **changes) -> Obligation:
        with immediate_transaction(self._conn, self._lock) as conn:
            row = conn.execute(
                "SELECT record_json FROM obligations WHERE id = ?", (obligation_id,)
            ).fetchone()
            if row is None:
                raise ObligationNotFoundError(obligation_id)
            updated = self._deserialize(row).model_copy(update=changes)
            self._write(updated)
        return updated

    def set_status(self, obligation_id: str, status: ObligationStatus) -> Obligation:
        updated = self._update(obligation_id, status=status)
        if status == ObligationStatus.DONE:
            self.unblock_dependents(updated.conversation_id)
        return updated

    def snooze(self, obligation_id: str, until: datetime) -> Obligation:
        return self._update(obligation_id, snooze_until=until)

    def set_lane_override(self, obligation_id: str, lane: Optional[Lane]) -> Obligation:
        return self._update(obligation_id, lane_override=lane)

    def get(self, obligation_id: str) -> Optional[Obligation]:
        with self._lock:
            row = self._conn.execute(
                "SELECT record_json FROM obligations WHERE id = ?", (obligation_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def list_by_conversation(self, conversation_id: str) -> List[Obligation]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT record_json FROM obligations WHERE conversation_id = ? ORDER BY id",
                (conversation_id,),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def list_all(self, statuses: Optional[List[ObligationStatus]] = None) -> List[Obligation]:
        with self._lock:
            if statuses:
                marks = ",".join("?" for _ in statuses)
                rows = self._conn.execute(
                    f"SELECT record_json FROM obligations WHERE status IN ({marks}) ORDER BY id",
                    [s.value for s in statuses],
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT record_json FROM obligations ORDER BY id"
                ).fetchall()
        return [self._deserialize(r) for r in rows]

    def high_signal_conversations(self, since: datetime) -> List[str]:
        """Conversations with open high-urgency obligations seen since `since`, most recent first."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT conversation_id, MAX(last_seen_at) AS latest
                FROM obligations
                WHERE status = ? AND urgency = ? AND last_seen_at >= ?
                GROUP BY conversation_id
                ORDER BY latest DESC, conversation_id
                """,
                (ObligationStatus.OPEN.value, Urgency.HIGH.value, format_ts(since)),
            ).fetchall()
        return [r["conversation_id"] for r in rows]

    def active_conversations(self) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT conversation_id FROM obligations WHERE status = ? "
                "ORDER BY conversation_id",
                (ObligationStatus.OPEN.value,),
            ).fetchall()
        return [r["conversation_id"] for r in rows]

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM obligations").fetchone()
        return row["cnt"]

    # --- Run log ---

    def append_run(self, run: ExtractionRun) -> None:
        """Best-effort: a failed write is logged, never raised."""
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO extraction_runs "
                    "(run_id, conversation_id, started_at, has_error, record_json) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        run.run_id,
                        run.conversation_id,
                        format_ts(run.started_at),
                        int(run.error is not None),
                        run.model_dump_json(),
                    ),
                )
        except sqlite3.Error:
            logger.warning("Failed to record extraction run %s", run.run_id, exc_info=True)

    def recent_runs(
        self,
        limit: int = 50,
        conversation_id: Optional[str] = None,
        errors_only: bool = False,
    ) -> List[ExtractionRun]:
        clauses, params = [], []
        if conversation_id:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if errors_only:
            clauses.append("has_error = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT record_json FROM extraction_runs {where} "
                "ORDER BY started_at DESC, rowid DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [ExtractionRun.model_validate_json(r["record_json"]) for r in rows]

    def close(self) -> None:
        self._conn.close()
