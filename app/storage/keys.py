"""Logical key layout of the store."""

USER = "user:"
PRODUCT = "product:"
PENDING = "pending:"
PENDING_OWNER = "pending_owner:"
PAYMENT_CLAIM = "payment_claim:"
PAYMENT_ARCHIVE = "payment_archive:"
TRANSACTIONS = "transactions:"
LEDGER_IDEMPOTENCY = "ledger_idem:"
REWARD_SETTINGS = "reward_settings"
STATISTICS = "statistics"
AUDIT_LOG = "audit_log"
FAILED_JOBS = "failed_jobs"


def user(user_id: str) -> str:
    return f"{USER}{user_id}"


def product(product_key: str) -> str:
    return f"{PRODUCT}{product_key}"


def pending(payment_id: str) -> str:
    return f"{PENDING}{payment_id}"


def pending_owner(user_id: str) -> str:
    return f"{PENDING_OWNER}{user_id}"


def payment_claim(payment_id: str) -> str:
    return f"{PAYMENT_CLAIM}{payment_id}"


def payment_archive(payment_id: str) -> str:
    return f"{PAYMENT_ARCHIVE}{payment_id}"


def transactions(user_id: str) -> str:
    return f"{TRANSACTIONS}{user_id}"


def ledger_idempotency(idempotency_key: str) -> str:
    return f"{LEDGER_IDEMPOTENCY}{idempotency_key}"
