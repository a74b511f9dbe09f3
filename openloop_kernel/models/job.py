"""Durable background job records."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"


class Job(BaseModel):
    id: int
    type: str
    conversation_id: Optional[str] = None
    payload: dict = {}
    dedupe_key: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    run_after: datetime
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[dict] = None
    created_at: datetime
    updated_at: datetime


class JobQueueConfig(BaseModel):
    backoff_seconds: List[int] = [300, 1800, 7200]   # last step repeats
    lock_timeout_seconds: int = 900
    max_queue_depth: Optional[int] = 10000
    max_error_length: int = 500
