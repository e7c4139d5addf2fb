from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_id_list(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return []
        if isinstance(v, list):
            return [str(x).strip() for x in v if str(x).strip()]
        s = str(v).strip()
        if s.startswith("["):
            import json
            return [str(x).strip() for x in json.loads(s) if str(x).strip()]
        return [x.strip() for x in s.split(",") if x.strip()]
    except (TypeError, ValueError):
        return []


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # Key-value store
    store_backend: str = Field(default="redis", alias="STORE_BACKEND")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    store_key_prefix: str = Field(default="qrisbot:", alias="STORE_KEY_PREFIX")

    # Telegram
    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_api_url: str = Field(default="https://api.telegram.org", alias="TELEGRAM_API_URL")
    telegram_webhook_secret: str = Field(default="", alias="TELEGRAM_WEBHOOK_SECRET")
    operator_chat_id: str = Field(default="", alias="OPERATOR_CHAT_ID")
    operator_user_ids_raw: str = Field(
        default="",
        alias="OPERATOR_USER_IDS",
        description="Comma-separated or JSON list of Telegram user ids",
    )

    # Admin API
    admin_api_key: str = Field(default="", alias="ADMIN_API_KEY")

    # QRIS provider
    qris_create_url: str = Field(default="", alias="QRIS_CREATE_URL")
    qris_check_url: str = Field(default="", alias="QRIS_CHECK_URL")
    qris_merchant_id: str = Field(default="", alias="QRIS_MERCHANT_ID")
    qris_api_key: str = Field(default="", alias="QRIS_API_KEY")
    qris_code: str = Field(default="", alias="QRIS_CODE")
    qris_callback_secret: str = Field(default="", alias="QRIS_CALLBACK_SECRET")
    qris_timeout_seconds: float = Field(default=10.0, alias="QRIS_TIMEOUT_SECONDS")

    # Payments
    payment_expiry_minutes: int = Field(default=15, alias="PAYMENT_EXPIRY_MINUTES")
    min_deposit_amount: int = Field(default=10000, alias="MIN_DEPOSIT_AMOUNT")
    min_purchase_amount: int = Field(default=1, alias="MIN_PURCHASE_AMOUNT")
    max_purchase_qty: int = Field(default=50, alias="MAX_PURCHASE_QTY")
    # Random surcharge added to the nominal so each invoice total is unique; max 0 disables it
    payment_surcharge_min: int = Field(default=1, alias="PAYMENT_SURCHARGE_MIN")
    payment_surcharge_max: int = Field(default=0, alias="PAYMENT_SURCHARGE_MAX")
    payment_claim_ttl_seconds: int = Field(default=24 * 3600, alias="PAYMENT_CLAIM_TTL_SECONDS")
    payment_archive_ttl_seconds: int = Field(default=7 * 24 * 3600, alias="PAYMENT_ARCHIVE_TTL_SECONDS")

    # Ledger
    transaction_history_limit: int = Field(default=100, alias="TRANSACTION_HISTORY_LIMIT")
    audit_log_limit: int = Field(default=500, alias="AUDIT_LOG_LIMIT")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    @property
    def operator_user_ids(self) -> List[str]:
        return _parse_id_list(getattr(self, "operator_user_ids_raw", None))


@lru_cache
def get_settings() -> Settings:
    return Settings()
