"""ARQ job definitions."""

import uuid
from datetime import datetime, timezone
from typing import Any

from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import configure_logging, get_logger
from app.services.qris import get_provider
from app.services.telegram import get_bot
from app.storage import keys
from app.storage.base import get_store

log = get_logger(__name__)

FAILED_JOBS_LIMIT = 200


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> None:
    """Run coroutine; on exception append to the failed_jobs list then re-raise."""
    try:
        await coro
    except Exception as e:
        fid = job_id or str(uuid.uuid4())
        entry = {
            "job_name": job_name,
            "job_id": fid,
            "args": args,
            "kwargs": kwargs,
            "reason": str(e)[:2000],
            "retries": 0,
            "failed_at": datetime.now(timezone.utc).isoformat(),
        }

        def mutate(doc):
            return (list(doc or []) + [entry])[-FAILED_JOBS_LIMIT:]

        await get_store().update(keys.FAILED_JOBS, mutate)
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def startup(ctx: dict) -> None:
    configure_logging(debug=get_settings().debug)
    log.info("worker_startup", backend=get_settings().store_backend)


async def shutdown(ctx: dict) -> None:
    await get_provider().close()
    await get_bot().close()
    await get_store().close()


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


async def sweep_expired_payments(ctx: dict[str, Any]) -> None:
    """Cron job: expire overdue pending payments."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from app.worker.cron import run_sweep_expired_payments
    await _run_with_dlq("sweep_expired_payments", job_id, [], {}, run_sweep_expired_payments())
