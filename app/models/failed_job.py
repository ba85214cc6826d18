"""Dead-letter: ARQ sweeps that raised, kept for inspection and manual replay."""

from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class FailedJob(Document):
    job_name: str
    job_id: str
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    try_count: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_jobs"
        indexes = [[("job_name", 1), ("created_at", -1)]]
