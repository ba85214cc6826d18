from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    event_type: str  # credits_purchased, vacancy_boost, credits_expired, ...
    employer_id: str | None = None
    actor_user_id: str | None = None  # None for system events
    vacancy_id: str | None = None
    source: str = "web"  # web | api | admin | system
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("employer_id", 1), ("created_at", -1)],
            [("vacancy_id", 1)],
        ]
