"""
Registry of in-flight payments.

Records live under `pending:{payment_id}` while payable. Every transition out of
Pending (confirm, expire, cancel, sweep) first takes the payment's claim key with a
set-if-absent write, then finalizes with a compare-and-swap that re-verifies
status == pending. Only one actor can ever hold the claim, so side effects
(ledger credit, stock delivery) run at most once. A claim is never released: the
record is archived and deleted right after the transition.

Deposits additionally hold `pending_owner:{user_id}` so a user has at most one
payable deposit invoice at a time.
"""

from datetime import datetime, timezone

from app.core.config import get_settings
from app.core.exceptions import AlreadyPendingError, ConflictError
from app.core.logging import get_logger
from app.models.pending_payment import PaymentKind, PaymentStatus, PendingPayment
from app.storage import keys
from app.storage.base import KeyValueStore

log = get_logger(__name__)


class _LostRace(Exception):
    pass


OWNER_PLACEHOLDER_MARGIN_SECONDS = 60


def _placeholder_ttl() -> int:
    # unbound slot only has to outlive one invoice request
    return int(get_settings().qris_timeout_seconds) + OWNER_PLACEHOLDER_MARGIN_SECONDS


async def acquire_owner(store: KeyValueStore, user_id: str) -> None:
    """Reserve the user's single deposit slot before an invoice is requested."""
    if await store.add(keys.pending_owner(user_id), {"payment_id": None}, ttl_seconds=_placeholder_ttl()):
        return
    doc = await store.get(keys.pending_owner(user_id)) or {}
    raise AlreadyPendingError(doc.get("payment_id"))


async def bind_owner(store: KeyValueStore, user_id: str, payment_id: str, expiry_minutes: int) -> None:
    ttl = expiry_minutes * 60 + get_settings().payment_claim_ttl_seconds
    await store.put(keys.pending_owner(user_id), {"payment_id": payment_id}, ttl_seconds=ttl)


async def release_owner(store: KeyValueStore, user_id: str, payment_id: str | None = None) -> None:
    """Free the deposit slot; with payment_id, only if the slot still belongs to that payment."""
    if payment_id is not None:
        doc = await store.get(keys.pending_owner(user_id))
        if doc and doc.get("payment_id") not in (None, payment_id):
            return
    await store.delete(keys.pending_owner(user_id))


async def create(store: KeyValueStore, payment: PendingPayment) -> PendingPayment:
    if not await store.add(keys.pending(payment.payment_id), payment.model_dump(mode="json")):
        raise ConflictError("Payment id already registered", details={"payment_id": payment.payment_id})
    if payment.kind == PaymentKind.DEPOSIT:
        await bind_owner(store, payment.user_id, payment.payment_id, payment.expiry_minutes)
    log.info(
        "pending_created",
        payment_id=payment.payment_id,
        user_id=payment.user_id,
        kind=payment.kind.value,
        amount=payment.amount,
        total_due=payment.total_due,
    )
    return payment


async def get(store: KeyValueStore, payment_id: str) -> PendingPayment | None:
    doc = await store.get(keys.pending(payment_id))
    return PendingPayment.model_validate(doc) if doc else None


async def get_archived(store: KeyValueStore, payment_id: str) -> PendingPayment | None:
    doc = await store.get(keys.payment_archive(payment_id))
    return PendingPayment.model_validate(doc) if doc else None


async def list_pending(store: KeyValueStore) -> list[PendingPayment]:
    out = []
    for key in await store.keys(keys.PENDING):
        doc = await store.get(key)
        if doc:
            out.append(PendingPayment.model_validate(doc))
    return sorted(out, key=lambda p: p.created_at)


async def attach_message(store: KeyValueStore, payment_id: str, message_id: int) -> None:
    """Remember which chat message shows the invoice. No-op once the record is gone."""

    def mutate(doc):
        if doc is None:
            raise _LostRace()
        doc["message_id"] = message_id
        return doc

    try:
        await store.update(keys.pending(payment_id), mutate)
    except _LostRace:
        pass


async def remove(store: KeyValueStore, payment_id: str) -> None:
    await store.delete(keys.pending(payment_id))


async def claim(store: KeyValueStore, payment_id: str, by: str) -> bool:
    """Take exclusive right to move the payment out of Pending."""
    won = await store.add(
        keys.payment_claim(payment_id),
        {"by": by, "at": datetime.now(timezone.utc).isoformat()},
        ttl_seconds=get_settings().payment_claim_ttl_seconds,
    )
    if not won:
        log.info("payment_claim_lost", payment_id=payment_id, by=by)
    return won


async def finalize(
    store: KeyValueStore,
    payment_id: str,
    status: PaymentStatus,
    now: datetime,
    reason: str | None = None,
) -> PendingPayment | None:
    """
    Pending -> terminal status, then archive and detach. Caller must hold the claim.
    Returns None if the record is gone or no longer pending.
    """
    finalized: list[PendingPayment] = []

    def mutate(doc):
        if doc is None:
            raise _LostRace()
        payment = PendingPayment.model_validate(doc)
        if payment.status != PaymentStatus.PENDING:
            raise _LostRace()
        payment.transition(status, now, reason)
        finalized.append(payment)
        return payment.model_dump(mode="json")

    try:
        await store.update(keys.pending(payment_id), mutate)
    except _LostRace:
        log.warning("finalize_lost_race", payment_id=payment_id, status=status.value)
        return None

    payment = finalized[-1]
    await store.put(
        keys.payment_archive(payment_id),
        payment.model_dump(mode="json"),
        ttl_seconds=get_settings().payment_archive_ttl_seconds,
    )
    await remove(store, payment_id)
    if payment.kind == PaymentKind.DEPOSIT:
        await release_owner(store, payment.user_id, payment_id)
    log.info("payment_finalized", payment_id=payment_id, status=status.value, reason=reason)
    return payment


async def sweep_expired(store: KeyValueStore, now: datetime) -> list[PendingPayment]:
    """
    Expire every Pending record past its expiry. Works on a key snapshot and re-reads each
    record, so records created after the scan are untouched and records whose claim is
    held by a concurrent confirm are skipped.
    """
    swept = []
    for key in await store.keys(keys.PENDING):
        payment_id = key[len(keys.PENDING):]
        payment = await get(store, payment_id)
        if payment is None or payment.status != PaymentStatus.PENDING or not payment.is_expired(now):
            continue
        if not await claim(store, payment_id, "sweep"):
            continue
        expired = await finalize(store, payment_id, PaymentStatus.EXPIRED, now, reason="expired")
        if expired:
            swept.append(expired)
    if swept:
        log.info("pending_swept", count=len(swept))
    return swept
