"""Cron: expire overdue pending payments and tell their owners."""

from datetime import datetime

from app.core.logging import get_logger
from app.services import payments as payments_service
from app.services.notifications import deliver_expired_notice
from app.services.telegram import TelegramBot, get_bot
from app.storage.base import KeyValueStore, get_store

log = get_logger(__name__)


async def run_sweep_expired_payments(
    store: KeyValueStore | None = None,
    bot: TelegramBot | None = None,
    now: datetime | None = None,
) -> int:
    """Expire every payment past its deadline; delete its invoice message and send an expiry notice."""
    store = store or get_store()
    bot = bot or get_bot()
    notices = await payments_service.on_periodic_sweep(store, now)
    if notices:
        log.info("sweep_expired_payments", count=len(notices))
    for notice in notices:
        await deliver_expired_notice(bot, notice)
    return len(notices)
