"""
Extraction pipeline: one incremental pass per conversation.

    cursor -> fetch -> classify -> sanitize -> merge/persist -> advance cursor

Behavioral Contract:
- Work on one conversation is serialized; different conversations run
  concurrently up to `max_concurrency`.
- The cursor advances only after obligations are persisted, and only to the
  newest message actually handed to the classifier. It never moves backward.
- A sighting whose evidence predates the previous cursor is only accepted as
  a merge into an existing record.
- A failure on one conversation leaves its cursor and obligations untouched
  and does not stop the others.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set
from uuid import uuid4

from openloop_kernel.cursor.store import CursorStore
from openloop_kernel.evidence.sanitizer import EvidenceSanitizer
from openloop_kernel.extraction.followups import derive_follow_ups
from openloop_kernel.models.cursor import Cursor
from openloop_kernel.models.extraction import (
    ClassifierContext,
    ExtractionConfig,
    ExtractionRun,
    RefreshSummary,
)
from openloop_kernel.models.message import Message
from openloop_kernel.models.obligation import DropRecord, Obligation
from openloop_kernel.obligations.store import ObligationStore
from openloop_kernel.timeutil import utcnow
from openloop_kernel.upstream.client import Classifier, MessageSource, UpstreamError

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """One conversation's refresh failed; nothing was persisted for it."""


class ExtractionPipeline:
    def __init__(
        self,
        source: MessageSource,
        classifier: Classifier,
        obligation_store: ObligationStore,
        cursor_store: CursorStore,
        config: Optional[ExtractionConfig] = None,
        sanitizer: Optional[EvidenceSanitizer] = None,
    ):
        self.source = source
        self.classifier = classifier
        self.obligation_store = obligation_store
        self.cursor_store = cursor_store
        self.config = config or ExtractionConfig()
        self.sanitizer = sanitizer or EvidenceSanitizer(self.config)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._batch_limits: Dict[str, int] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def batch_limit(self, conversation_id: str) -> int:
        return self._batch_limits.get(conversation_id, self.config.max_batch_messages)

    def _adjust_batch_limit(self, conversation_id: str, truncated: bool) -> None:
        current = self.batch_limit(conversation_id)
        if truncated:
            updated = max(self.config.min_batch_messages, current // 2)
        else:
            updated = min(self.config.max_batch_messages, current * 2)
        if updated != current:
            logger.info("Batch limit for %s: %d -> %d", conversation_id, current, updated)
        self._batch_limits[conversation_id] = updated

    async def refresh_conversation(
        self,
        conversation_id: str,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> ExtractionRun:
        async with self._lock_for(conversation_id):
            return await self._refresh_locked(conversation_id, force, now or utcnow())

    async def _refresh_locked(self, conversation_id: str, force: bool, now: datetime) -> ExtractionRun:
        run = ExtractionRun(run_id=str(uuid4()), conversation_id=conversation_id, started_at=now)
        previous = self.cursor_store.get(conversation_id)
        previous_key = (
            (previous.last_processed_ts, previous.last_processed_message_id or "")
            if previous and previous.last_processed_ts else None
        )
        watermark_key = None if force else previous_key
        watermark = watermark_key[0] if watermark_key else None

        if watermark is None:
            since = now - timedelta(hours=self.config.lookback_hours)
        else:
            since = watermark - timedelta(hours=self.config.context_window_hours)

        try:
            fetched = await self.source.fetch_since(since, self.config.fetch_limit, conversation_id)
        except UpstreamError as exc:
            run.error = f"fetch_failed: {exc}"
            self.obligation_store.append_run(run)
            raise ExtractionError(run.error) from exc

        messages = sorted(
            (m for m in fetched.messages if m.conversation_id == conversation_id),
            key=lambda m: (m.ts, m.id),
        )
        if watermark is None:
            context: List[Message] = []
            fresh = [m for m in messages if m.ts >= since]
        else:
            # Messages sharing the watermark timestamp are ordered by id
            context = [m for m in messages if (m.ts, m.id) <= watermark_key][-self.config.context_messages:]
            fresh = [m for m in messages if (m.ts, m.id) > watermark_key]

        limit = self.batch_limit(conversation_id)
        self._adjust_batch_limit(conversation_id, fetched.truncated or len(fresh) > limit)
        fresh = fresh[:limit]

        run.message_count = len(fresh)
        if fresh:
            run.from_ts, run.to_ts = fresh[0].ts, fresh[-1].ts

        if not fresh and not force:
            run.skipped_reason = "no_new_messages"
            run.finished_at = utcnow()
            self.obligation_store.append_run(run)
            return run

        existing = self.obligation_store.list_by_conversation(conversation_id)
        try:
            raw = await self.classifier.extract(ClassifierContext(
                conversation_id=conversation_id,
                context_messages=context,
                new_messages=fresh,
                existing_obligations=[
                    {"id": o.id, "summary": o.summary, "taskGoal": o.task_goal, "status": o.status.value}
                    for o in existing
                ],
            ))
        except UpstreamError as exc:
            run.error = f"classifier_failed: {exc}"
            self.obligation_store.append_run(run)
            raise ExtractionError(run.error) from exc

        run.raw_candidates = len(raw) if isinstance(raw, list) else 0
        result = self.sanitizer.sanitize(conversation_id, raw, context + fresh, now=now)

        sightings, stale = self._drop_stale(result.obligations, existing, watermark, {m.id for m in fresh})
        dropped = result.dropped + stale

        batch_end = fresh[-1].ts if fresh else now
        sightings.extend(derive_follow_ups(sightings, batch_end))
        merged = self.obligation_store.merge_sightings(sightings) if sightings else []
        self.obligation_store.unblock_dependents(conversation_id)

        new_ts = fresh[-1].ts if fresh else None
        new_id = fresh[-1].id if fresh else None
        if previous_key is not None and (new_ts is None or (new_ts, new_id) < previous_key):
            new_ts, new_id = previous.last_processed_ts, previous.last_processed_message_id
        self.cursor_store.set(conversation_id, Cursor(
            conversation_id=conversation_id,
            last_processed_ts=new_ts,
            last_processed_message_id=new_id,
            last_run_ended_at=utcnow(),
        ))

        run.obligation_ids = [o.id for o in merged]
        run.dropped = dropped
        run.finished_at = utcnow()
        self.obligation_store.append_run(run)
        logger.info(
            "Refreshed %s: %d new messages, %d obligations, %d dropped",
            conversation_id, len(fresh), len(merged), len(dropped),
        )
        return run

    def _drop_stale(
        self,
        obligations: List[Obligation],
        existing: List[Obligation],
        watermark: Optional[datetime],
        fresh_ids: Set[str],
    ):
        if watermark is None:
            return list(obligations), []
        known = {o.id for o in existing}
        kept, dropped = [], []
        for obligation in obligations:
            stale = (
                obligation.last_seen_at <= watermark
                and obligation.evidence.message_id not in fresh_ids
                and obligation.id not in known
            )
            if stale:
                dropped.append(DropRecord(reason="stale_evidence", original=obligation.model_dump(mode="json")))
            else:
                kept.append(obligation)
        return kept, dropped

    async def discover_conversations(self, hours: int, now: Optional[datetime] = None) -> List[str]:
        """Conversations with activity in the last `hours`, most recent first."""
        now = now or utcnow()
        fetched = await self.source.fetch_since(now - timedelta(hours=hours), self.config.fetch_limit)
        latest: Dict[str, datetime] = {}
        for message in fetched.messages:
            if message.conversation_id not in latest or message.ts > latest[message.conversation_id]:
                latest[message.conversation_id] = message.ts
        ordered = sorted(latest, key=lambda c: (-latest[c].timestamp(), c))
        return ordered[: self.config.max_conversations]

    async def refresh_recent(
        self,
        hours: int = 48,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> RefreshSummary:
        """Refresh every recently active conversation; failures are counted, not raised."""
        now = now or utcnow()
        conversation_ids = await self.discover_conversations(hours, now)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        summary = RefreshSummary(conversations_processed=len(conversation_ids))

        async def one(conversation_id: str) -> None:
            async with semaphore:
                try:
                    run = await self.refresh_conversation(conversation_id, force=force, now=now)
                except Exception as exc:
                    logger.exception("Open-loop refresh failed for %s", conversation_id)
                    summary.failed += 1
                    summary.errors.append({"conversation_id": conversation_id, "error": str(exc)})
                    return
                summary.succeeded += 1
                summary.obligations_touched += len(run.obligation_ids)

        await asyncio.gather(*(one(c) for c in conversation_ids))
        logger.info(
            "Refresh over %dh: %d conversations, %d ok, %d failed",
            hours, summary.conversations_processed, summary.succeeded, summary.failed,
        )
        return summary
