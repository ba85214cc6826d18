"""Run ARQ worker. Usage: python -m app.worker.run_worker (or: arq app.worker.run_worker.WorkerSettings)"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import expire_credits, expire_vacancies, get_redis_settings, reconcile_open_spends, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [expire_credits, expire_vacancies, reconcile_open_spends]
    cron_jobs = [
        cron(expire_credits, hour=2, minute=0, second=0),  # daily
        cron(expire_vacancies, minute=5, second=0),  # hourly
        cron(reconcile_open_spends, minute={0, 10, 20, 30, 40, 50}, second=0),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
