"""Audit log for credit and vacancy lifecycle actions."""

from typing import Any

from app.models.audit_log import AuditLog


async def log_event(
    event_type: str,
    employer_id: str | None = None,
    actor_user_id: str | None = None,
    vacancy_id: str | None = None,
    source: str = "web",
    payload: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection."""
    await AuditLog(
        event_type=event_type,
        employer_id=employer_id,
        actor_user_id=actor_user_id,
        vacancy_id=vacancy_id,
        source=source,
        payload=payload or {},
    ).insert()
