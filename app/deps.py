"""Shared FastAPI dependencies."""

from fastapi import Header

from app.core.config import get_settings
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.security import secret_matches
from app.services.qris import PaymentProvider, get_provider
from app.services.telegram import TelegramBot, get_bot
from app.storage.base import KeyValueStore, get_store


def get_kv_store() -> KeyValueStore:
    return get_store()


def get_payment_provider() -> PaymentProvider:
    return get_provider()


def get_telegram_bot() -> TelegramBot:
    return get_bot()


async def require_admin(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    """Dependency: operator API key."""
    if not x_admin_key:
        raise UnauthorizedError("Missing admin key")
    if not secret_matches(x_admin_key, get_settings().admin_api_key):
        raise ForbiddenError("Admin only")


async def verify_telegram_secret(
    x_telegram_secret: str | None = Header(default=None, alias="X-Telegram-Bot-Api-Secret-Token"),
) -> None:
    """Dependency: Telegram's webhook secret header, when one is configured."""
    expected = get_settings().telegram_webhook_secret
    if expected and not secret_matches(x_telegram_secret, expected):
        raise UnauthorizedError("Invalid webhook secret")
