"""
Job Queue: durable, deduplicating, concurrently-claimable work queue.

Behavioral Contract:
- Enqueue is a no-op (returning the existing id) while a queued or running
  job with the same (type, conversation, dedupe key) exists.
- A claimed job is held by exactly one claimer: claiming flips status and
  sets locked_at in one statement under the database write lock.
- Claims take the oldest due jobs first: run_after, then id.
- Failures go back to the queue with a fixed backoff ladder; the last
  step repeats. Errors are truncated before storage.
- Running jobs whose lock outlives lock_timeout_seconds are swept back.
- Only the claim that holds a job may complete or fail it; a worker whose
  lock was swept cannot settle the job afterwards.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from openloop_kernel.models.job import Job, JobQueueConfig, JobStatus
from openloop_kernel.storage.sqlite import immediate_transaction, open_connection
from openloop_kernel.timeutil import format_ts, parse_ts, utcnow

logger = logging.getLogger(__name__)


class QueueFullError(Exception):
    """Raised when enqueue would exceed max_queue_depth queued jobs."""


class JobQueue:
    def __init__(self, db_path: str = ":memory:", config: Optional[JobQueueConfig] = None):
        self.db_path = db_path
        self.config = config or JobQueueConfig()
        self._conn = open_connection(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                conversation_id TEXT,
                payload_json TEXT NOT NULL DEFAULT '{}',
                dedupe_key TEXT,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                run_after TEXT NOT NULL,
                locked_at TEXT,
                last_error TEXT,
                result_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_due
            ON jobs(run_after, id) WHERE status = 'queued'
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_dedupe
            ON jobs(type, conversation_id, dedupe_key) WHERE status IN ('queued', 'running')
        """)

    def _deserialize(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            type=row["type"],
            conversation_id=row["conversation_id"],
            payload=json.loads(row["payload_json"] or "{}"),
            dedupe_key=row["dedupe_key"],
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            run_after=parse_ts(row["run_after"]),
            locked_at=parse_ts(row["locked_at"]),
            last_error=row["last_error"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    def enqueue(
        self,
        job_type: str,
        payload: Optional[dict] = None,
        conversation_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        not_before: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Insert a job (or find its live duplicate) and return its id."""
        now = now or utcnow()
        payload = payload or {}
        if conversation_id is None and isinstance(payload.get("conversation_id"), str):
            conversation_id = payload["conversation_id"]

        with immediate_transaction(self._conn, self._lock) as conn:
            if dedupe_key is not None:
                row = conn.execute(
                    "SELECT id FROM jobs WHERE type = ? AND conversation_id IS ? "
                    "AND dedupe_key = ? AND status IN ('queued', 'running') "
                    "ORDER BY id LIMIT 1",
                    (job_type, conversation_id, dedupe_key),
                ).fetchone()
                if row is not None:
                    logger.debug("Job %s/%s already pending as %s", job_type, dedupe_key, row["id"])
                    return row["id"]

            if self.config.max_queue_depth is not None:
                depth = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM jobs WHERE status = 'queued'"
                ).fetchone()["cnt"]
                if depth >= self.config.max_queue_depth:
                    raise QueueFullError(f"queue depth {depth} at limit {self.config.max_queue_depth}")

            cursor = conn.execute(
                """
                INSERT INTO jobs (
                    type, conversation_id, payload_json, dedupe_key, status,
                    attempts, run_after, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'queued', 0, ?, ?, ?)
                """,
                (
                    job_type,
                    conversation_id,
                    json.dumps(payload, default=str),
                    dedupe_key,
                    format_ts(not_before or now),
                    format_ts(now),
                    format_ts(now),
                ),
            )
            return cursor.lastrowid

    def claim(self, max_count: int = 1, now: Optional[datetime] = None) -> List[Job]:
        """Atomically take up to max_count due jobs, oldest first."""
        if max_count <= 0:
            return []
        now = now or utcnow()
        stamp = format_ts(now)
        with immediate_transaction(self._conn, self._lock) as conn:
            rows = conn.execute(
                """
                UPDATE jobs
                SET status = 'running', locked_at = ?, updated_at = ?
                WHERE id IN (
                    SELECT id FROM jobs
                    WHERE status = 'queued' AND run_after <= ? AND locked_at IS NULL
                    ORDER BY run_after ASC, id ASC
                    LIMIT ?
                )
                RETURNING *
                """,
                (stamp, stamp, stamp, max_count),
            ).fetchall()
        jobs = [self._deserialize(r) for r in rows]
        jobs.sort(key=lambda j: (j.run_after, j.id))
        return jobs

    def _owner_clause(self, locked_at: Optional[datetime]) -> Tuple[str, tuple]:
        # Only the current claimer may settle a running job
        if locked_at is None:
            return "status = 'running'", ()
        return "status = 'running' AND locked_at = ?", (format_ts(locked_at),)

    def complete(
        self,
        job_id: int,
        result: Optional[dict] = None,
        now: Optional[datetime] = None,
        locked_at: Optional[datetime] = None,
    ) -> bool:
        """
        Mark a running job done. Pass the claim's locked_at so a worker whose
        lock was reclaimed cannot settle the job; returns False when it no
        longer owns it.
        """
        now = now or utcnow()
        owner, owner_args = self._owner_clause(locked_at)
        with immediate_transaction(self._conn, self._lock) as conn:
            cursor = conn.execute(
                "UPDATE jobs SET status = 'done', locked_at = NULL, result_json = ?, updated_at = ? "
                f"WHERE id = ? AND {owner}",
                (
                    json.dumps(result, default=str) if result is not None else None,
                    format_ts(now),
                    job_id,
                    *owner_args,
                ),
            )
        if cursor.rowcount == 0:
            logger.warning("Job %s not completed: no longer held by this claim", job_id)
        return cursor.rowcount > 0

    def backoff_for(self, attempts: int) -> timedelta:
        """Delay before retry number `attempts` (1-based); the last ladder step repeats."""
        ladder = self.config.backoff_seconds
        return timedelta(seconds=ladder[min(max(attempts, 1), len(ladder)) - 1])

    def fail(
        self,
        job_id: int,
        error: str,
        now: Optional[datetime] = None,
        locked_at: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Requeue a running job with backoff. Returns the updated job, or None if not held."""
        now = now or utcnow()
        owner, owner_args = self._owner_clause(locked_at)
        with immediate_transaction(self._conn, self._lock) as conn:
            row = conn.execute(
                f"SELECT attempts FROM jobs WHERE id = ? AND {owner}", (job_id, *owner_args)
            ).fetchone()
            if row is None:
                logger.warning("Job %s not failed: no longer held by this claim", job_id)
                return None
            attempts = row["attempts"] + 1
            updated = conn.execute(
                """
                UPDATE jobs SET status = 'queued', locked_at = NULL, attempts = ?,
                    run_after = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                RETURNING *
                """,
                (
                    attempts,
                    format_ts(now + self.backoff_for(attempts)),
                    (error or "")[: self.config.max_error_length],
                    format_ts(now),
                    job_id,
                ),
            ).fetchall()[0]
        logger.warning("Job %s failed (attempt %d): %s", job_id, attempts, error)
        return self._deserialize(updated)

    def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        """Return running jobs with expired locks to the queue."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.config.lock_timeout_seconds)
        with immediate_transaction(self._conn, self._lock) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs SET status = 'queued', locked_at = NULL, attempts = attempts + 1,
                    last_error = 'lock_expired', run_after = ?, updated_at = ?
                WHERE status = 'running' AND locked_at < ?
                """,
                (format_ts(now), format_ts(now), format_ts(cutoff)),
            )
        if cursor.rowcount:
            logger.warning("Reclaimed %d jobs with expired locks", cursor.rowcount)
        return cursor.rowcount

    def get(self, job_id: int) -> Optional[Job]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._deserialize(row) if row else None

    def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[Job]:
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM jobs ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM jobs WHERE status = ? ORDER BY id DESC LIMIT ?",
                    (status.value, limit),
                ).fetchall()
        return [self._deserialize(r) for r in rows]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM jobs GROUP BY status"
            ).fetchall()
        counts = {s.value: 0 for s in JobStatus}
        counts.update({r["status"]: r["cnt"] for r in rows})
        return counts

    def close(self) -> None:
        self._conn.close()
