"""Top-level kernel configuration."""

from typing import Optional

from pydantic import BaseModel

from openloop_kernel.models.extraction import ExtractionConfig
from openloop_kernel.models.job import JobQueueConfig
from openloop_kernel.models.orchestrator import OrchestratorConfig


class KernelConfig(BaseModel):
    db_path: str = ":memory:"
    source_base_url: str = "http://localhost:3000"
    source_api_key: Optional[str] = None
    classifier_url: str = "http://localhost:8080/extract"
    upstream_timeout_seconds: float = 10.0
    classifier_timeout_seconds: float = 60.0
    log_level: Optional[str] = None

    extraction: ExtractionConfig = ExtractionConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    jobs: JobQueueConfig = JobQueueConfig()
