"""
Action Plan Store: append-only, hash-chained record of orchestrator ticks.

Behavioral Contract:
- Append-only. No plan is ever modified or deleted.
- Each plan is hashed and chained to the previous plan's signature.
- Every candidate decision is also stored as its own row, so "what was
  posted for conversation X" needs no JSON scanning.
"""

import hashlib
import json
import sqlite3
import threading
from typing import List, Optional

from openloop_kernel.models.plan import ActionPlan, DecisionStatus
from openloop_kernel.storage.sqlite import immediate_transaction, open_connection
from openloop_kernel.timeutil import format_ts


def compute_signature(plan: ActionPlan) -> str:
    plan_dict = plan.model_dump(mode="json")
    plan_dict["signature"] = ""
    plan_bytes = json.dumps(plan_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(plan_bytes).hexdigest()


class ActionPlanStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = open_connection(db_path)
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS action_plans (
                id TEXT PRIMARY KEY,
                tick_id INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                reason TEXT,
                forced INTEGER NOT NULL DEFAULT 0,
                ok INTEGER,
                signature TEXT NOT NULL,
                prior_plan_hash TEXT,
                plan_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS plan_decisions (
                plan_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                signal TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                reason TEXT,
                target_messages INTEGER
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_plan_decisions_plan ON plan_decisions(plan_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_plan_decisions_conversation
            ON plan_decisions(conversation_id)
        """)

    def append(self, plan: ActionPlan) -> ActionPlan:
        """Chain, sign and store a plan. Returns the signed copy."""
        with immediate_transaction(self._conn, self._lock) as conn:
            row = conn.execute(
                "SELECT signature FROM action_plans ORDER BY rowid DESC LIMIT 1"
            ).fetchone()
            signed = plan.model_copy(update={"prior_plan_hash": row["signature"] if row else None})
            signed.signature = compute_signature(signed)
            conn.execute(
                """
                INSERT INTO action_plans (
                    id, tick_id, created_at, reason, forced, ok,
                    signature, prior_plan_hash, plan_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    signed.id,
                    signed.tick_id,
                    format_ts(signed.created_at),
                    signed.reason.value if signed.reason else None,
                    int(signed.forced),
                    int(signed.outcome.ok) if signed.outcome else None,
                    signed.signature,
                    signed.prior_plan_hash,
                    json.dumps(signed.model_dump(mode="json"), default=str),
                ),
            )
            conn.executemany(
                "INSERT INTO plan_decisions "
                "(plan_id, conversation_id, signal, action, status, reason, target_messages) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        signed.id,
                        d.conversation_id,
                        d.signal.value,
                        d.action.value,
                        d.status.value,
                        d.reason.value if d.reason else None,
                        d.target_messages,
                    )
                    for d in signed.decisions
                ],
            )
        return signed

    def _deserialize(self, row: sqlite3.Row) -> ActionPlan:
        return ActionPlan.model_validate_json(row["plan_json"])

    def get_by_id(self, plan_id: str) -> Optional[ActionPlan]:
        with self._lock:
            row = self._conn.execute(
                "SELECT plan_json FROM action_plans WHERE id = ?", (plan_id,)
            ).fetchone()
        return self._deserialize(row) if row else None

    def query_recent(self, limit: int = 50) -> List[ActionPlan]:
        """Most recent plans, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT plan_json FROM action_plans ORDER BY rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_by_conversation(self, conversation_id: str) -> List[ActionPlan]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT p.plan_json FROM action_plans p
                WHERE p.id IN (SELECT plan_id FROM plan_decisions WHERE conversation_id = ?)
                ORDER BY p.rowid
                """,
                (conversation_id,),
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def count_decisions(self, plan_id: str, status: Optional[DecisionStatus] = None) -> int:
        with self._lock:
            if status is None:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS cnt FROM plan_decisions WHERE plan_id = ?", (plan_id,)
                ).fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS cnt FROM plan_decisions WHERE plan_id = ? AND status = ?",
                    (plan_id, status.value),
                ).fetchone()
        return row["cnt"]

    def verify_chain_integrity(self) -> bool:
        """Recompute every signature and check each link to its predecessor."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT plan_json, signature FROM action_plans ORDER BY rowid"
            ).fetchall()

        for i, row in enumerate(rows):
            plan = self._deserialize(row)
            if plan.signature != row["signature"] or compute_signature(plan) != plan.signature:
                return False
            expected_prior = rows[i - 1]["signature"] if i > 0 else None
            if plan.prior_plan_hash != expected_prior:
                return False
        return True

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS cnt FROM action_plans").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
