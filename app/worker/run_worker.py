"""Run ARQ worker. Usage: python -m app.worker.run_worker (or: arq app.worker.run_worker.WorkerSettings)"""

from arq import run_worker
from arq.cron import cron
from app.worker.tasks import get_redis_settings, shutdown, startup, sweep_expired_payments


class WorkerSettings:
    redis_settings = get_redis_settings()
    queue_name = "qrisbot:queue"
    functions: list = []
    cron_jobs = [
        cron(sweep_expired_payments, second=0, run_at_startup=True),  # every minute at :00
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
