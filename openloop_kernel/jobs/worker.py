"""
Job Worker: claims due jobs and dispatches them to registered handlers.

Handlers are async callables keyed by job type. A job type with no
handler is marked done (with a note) so it cannot clog the queue.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from openloop_kernel.jobs.queue import JobQueue
from openloop_kernel.models.job import Job
from openloop_kernel.timeutil import utcnow

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Optional[dict]]]


class JobWorker:
    def __init__(self, queue: JobQueue):
        self.queue = queue
        self._handlers: Dict[str, JobHandler] = {}

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    @property
    def job_types(self) -> List[str]:
        return sorted(self._handlers)

    async def drain(self, limit: int, now: Optional[datetime] = None) -> List[dict]:
        """Sweep stale locks, claim up to `limit` due jobs and run them in order."""
        now = now or utcnow()
        self.queue.reclaim_stale(now=now)
        results = []
        for job in self.queue.claim(limit, now=now):
            results.append(await self._dispatch(job))
        return results

    async def _dispatch(self, job: Job) -> dict:
        handler = self._handlers.get(job.type)
        if handler is None:
            logger.warning("No handler for job type %s (job %s); marking done", job.type, job.id)
            self.queue.complete(job.id, result={"skipped": "unknown_job_type"}, locked_at=job.locked_at)
            return {"job_id": job.id, "type": job.type, "status": "skipped"}

        try:
            result = await handler(job)
        except Exception as e:
            self.queue.fail(job.id, str(e) or type(e).__name__, locked_at=job.locked_at)
            return {"job_id": job.id, "type": job.type, "status": "failed", "error": str(e)}

        self.queue.complete(job.id, result=result, locked_at=job.locked_at)
        return {"job_id": job.id, "type": job.type, "status": "done"}
