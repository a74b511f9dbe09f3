"""Built-in job handlers: per-conversation metrics and single-conversation extraction."""

import statistics
from datetime import datetime, timedelta
from typing import Any, List, Optional

from openloop_kernel.extraction.pipeline import ExtractionPipeline
from openloop_kernel.jobs.worker import JobHandler
from openloop_kernel.models.job import Job
from openloop_kernel.models.message import Message
from openloop_kernel.timeutil import utcnow
from openloop_kernel.upstream.client import MessageSource

METRICS_JOB = "conversation_metrics"
OPEN_LOOPS_JOB = "open_loops_conversation"

DEFAULT_WINDOWS_DAYS = (1, 7, 30)


def parse_windows(raw: Any) -> List[int]:
    """Accepts [1, 7] or "1,7,30"; falls back to the default windows."""
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        return list(DEFAULT_WINDOWS_DAYS)
    windows = []
    for value in raw:
        try:
            days = int(str(value).strip())
        except ValueError:
            continue
        if 0 < days <= 365 and days not in windows:
            windows.append(days)
    return sorted(windows) or list(DEFAULT_WINDOWS_DAYS)


def _reply_latencies(messages: List[Message]) -> List[float]:
    """Seconds from each run of their messages to my next reply."""
    latencies = []
    waiting_since: Optional[datetime] = None
    for message in messages:
        if not message.from_me:
            if waiting_since is None:
                waiting_since = message.ts
        elif waiting_since is not None:
            latencies.append((message.ts - waiting_since).total_seconds())
            waiting_since = None
    return latencies


def compute_conversation_metrics(messages: List[Message], windows: List[int], now: datetime) -> dict:
    ordered = sorted(messages, key=lambda m: (m.ts, m.id))
    result = {"windows": {}}
    for days in windows:
        in_window = [m for m in ordered if m.ts >= now - timedelta(days=days)]
        mine = sum(1 for m in in_window if m.from_me)
        latencies = _reply_latencies(in_window)
        result["windows"][str(days)] = {
            "total": len(in_window),
            "from_me": mine,
            "from_them": len(in_window) - mine,
            "my_share": round(mine / len(in_window), 4) if in_window else None,
            "median_reply_seconds": statistics.median(latencies) if latencies else None,
        }
    result["last_message_at"] = ordered[-1].ts.isoformat() if ordered else None
    return result


def _conversation_of(job: Job) -> str:
    conversation_id = job.conversation_id or job.payload.get("conversation_id")
    if not conversation_id:
        raise ValueError(f"job {job.id} has no conversation_id")
    return conversation_id


def make_metrics_handler(source: MessageSource, fetch_limit: int = 5000) -> JobHandler:
    async def handle(job: Job) -> dict:
        conversation_id = _conversation_of(job)
        windows = parse_windows(job.payload.get("windows"))
        now = utcnow()
        fetched = await source.fetch_since(now - timedelta(days=max(windows)), fetch_limit, conversation_id)
        messages = [m for m in fetched.messages if m.conversation_id == conversation_id]
        metrics = compute_conversation_metrics(messages, windows, now)
        metrics.update(conversation_id=conversation_id, truncated=fetched.truncated)
        return metrics

    return handle


def make_open_loops_handler(pipeline: ExtractionPipeline) -> JobHandler:
    async def handle(job: Job) -> dict:
        run = await pipeline.refresh_conversation(
            _conversation_of(job), force=bool(job.payload.get("force", False))
        )
        return {
            "run_id": run.run_id,
            "obligations": len(run.obligation_ids),
            "dropped": len(run.dropped),
            "skipped_reason": run.skipped_reason,
        }

    return handle
