"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import get_logger
from app.services import credits as credits_service
from app.services import vacancies as vacancies_service

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            kwargs=kwargs,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _job_id(ctx: dict[str, Any]) -> str | None:
    return ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None


async def expire_credits(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: write expiration entries for lapsed credit bundles."""
    log.info("job_start", job="expire_credits")
    out = await _run_with_dlq("expire_credits", _job_id(ctx), {}, credits_service.expire_credits())
    log.info("job_done", job="expire_credits", **out)
    return out


async def expire_vacancies(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: move published vacancies past their closing date to verlopen."""
    return await _run_with_dlq("expire_vacancies", _job_id(ctx), {}, vacancies_service.expire_vacancies())


async def reconcile_open_spends(ctx: dict[str, Any]) -> dict[str, int]:
    """Cron job: settle spends left open by interrupted checkouts."""
    return await _run_with_dlq("reconcile_open_spends", _job_id(ctx), {}, credits_service.reconcile_open_spends())


async def startup(ctx: dict) -> None:
    from app.db.init import init_db
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
