"""Audit log for operator-relevant payment events."""

from datetime import datetime, timezone
from typing import Any

from app.core.config import get_settings
from app.core.logging import get_logger
from app.storage import keys
from app.storage.base import KeyValueStore

log = get_logger(__name__)


async def log_event(
    store: KeyValueStore,
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to the capped audit list and mirror to the structured log."""
    entry = {
        "user_id": user_id,
        "event_type": event_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "metadata": metadata or {},
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    limit = get_settings().audit_log_limit

    def mutate(doc):
        entries = list(doc or [])
        entries.append(entry)
        return entries[-limit:]

    await store.update(keys.AUDIT_LOG, mutate)
    log.info("audit", **{k: v for k, v in entry.items() if k != "created_at"})


async def recent_events(store: KeyValueStore, limit: int = 50) -> list[dict[str, Any]]:
    entries = await store.get(keys.AUDIT_LOG) or []
    return list(reversed(entries))[:limit]
