"""Store-wide counters for the operator dashboard."""

from datetime import datetime, timezone

from app.storage import keys
from app.storage.base import KeyValueStore

USER_REGISTERED = "user_registered"
PURCHASE = "purchase"
DEPOSIT = "deposit"


def _empty() -> dict:
    return {"total_transactions": 0, "total_revenue": 0, "total_users": 0, "daily": {}, "popular_products": {}}


async def get_statistics(store: KeyValueStore) -> dict:
    return await store.get(keys.STATISTICS) or _empty()


async def record_event(
    store: KeyValueStore,
    event: str,
    amount: int = 0,
    product_label: str | None = None,
    now: datetime | None = None,
) -> None:
    day = (now or datetime.now(timezone.utc)).date().isoformat()

    def mutate(doc):
        stats = doc or _empty()
        daily = stats["daily"].setdefault(day, {"transactions": 0, "revenue": 0, "users": 0})
        if event == PURCHASE:
            stats["total_transactions"] += 1
            stats["total_revenue"] += amount
            daily["transactions"] += 1
            daily["revenue"] += amount
            if product_label:
                stats["popular_products"][product_label] = stats["popular_products"].get(product_label, 0) + 1
        elif event == DEPOSIT:
            stats["total_revenue"] += amount
            daily["revenue"] += amount
        elif event == USER_REGISTERED:
            stats["total_users"] += 1
            daily["users"] += 1
        return stats

    await store.update(keys.STATISTICS, mutate)
