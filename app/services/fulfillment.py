"""
Payment lifecycle: invoice creation, confirmation with at-most-once fulfillment,
cancellation, expiry, and balance-paid purchases.

Concurrency: handlers are short-lived and share nothing but the store. The
guarantee rests on two store primitives (see services/pending.py): a set-if-absent
claim per payment and a compare-and-swap on the record. Whoever wins the claim
re-reads the record, re-checks status and expiry, and is the only one to touch
inventory and ledger; everyone else gets ALREADY_PROCESSED. Ledger credits also
carry idempotency keys derived from the payment id.

Known window: if a process dies after taking inventory but before finalizing, the
claim stays held, the record stays Pending and no one else will fulfil it; the
sweep skips it until the claim TTL lapses and then expires it. Such payments need
an operator (they show up in /v1/admin/pending and the audit log).
"""

import random
from datetime import datetime, timezone

from app.core import audit
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AlreadyPendingError,
    ForbiddenError,
    FulfillmentError,
    InsufficientStockError,
    InvalidAmountError,
    InvalidQuantityError,
    PaymentClosedError,
    PaymentNotFoundError,
    ProductNotFoundError,
    ProviderError,
    ProviderRejectedError,
)
from app.core.logging import get_logger
from app.models.outcome import AchievementUnlock, FulfillmentDetails, OutcomeKind, RenderableOutcome
from app.models.pending_payment import PaymentKind, PaymentStatus, PendingPayment
from app.models.transaction import TransactionType
from app.services import inventory, ledger, pending, rewards, statistics, users
from app.services.qris import PaymentProvider, ProviderStatus
from app.storage.base import KeyValueStore

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _surcharge(settings: Settings) -> int:
    low, high = settings.payment_surcharge_min, settings.payment_surcharge_max
    if high <= 0 or high < low:
        return 0
    return random.randint(max(0, low), high)


def _may_act(payment: PendingPayment, user_id: str | None, operator: bool = False) -> bool:
    if operator:
        return True
    if user_id is None:
        return False
    return str(user_id) == payment.user_id or str(user_id) in get_settings().operator_user_ids


# Creation


async def request_payment(
    store: KeyValueStore,
    provider: PaymentProvider,
    kind: PaymentKind,
    user_id: str,
    amount: int = 0,
    product_key: str | None = None,
    qty: int = 1,
    now: datetime | None = None,
) -> PendingPayment:
    """
    Validate, hold stock (purchase) or the user's deposit slot (deposit), ask the
    provider for an invoice and persist it as Pending. For purchases `amount` is
    computed from the product price.
    """
    settings = get_settings()
    now = now or _now()
    user_id = str(user_id)
    await users.get_or_create_user(store, user_id)

    product = None
    if kind == PaymentKind.DEPOSIT:
        if amount < settings.min_deposit_amount:
            raise InvalidAmountError(amount, settings.min_deposit_amount)
        product_key, qty = None, 1
        await _acquire_deposit_slot(store, user_id, now)
    else:
        if qty < 1 or qty > settings.max_purchase_qty:
            raise InvalidQuantityError(qty, settings.max_purchase_qty)
        product = await inventory.get_product(store, product_key) if product_key else None
        if product is None:
            raise ProductNotFoundError(product_key or "")
        amount = product.price * qty
        if amount < settings.min_purchase_amount:
            raise InvalidAmountError(amount, settings.min_purchase_amount)
        # stock is held from invoice creation until paid, cancelled or expired
        product = await inventory.reserve(store, product_key, qty)

    surcharge = _surcharge(settings)
    note = f"Deposit {amount}" if product is None else f"Purchase {product.title} x{qty}"
    try:
        invoice = await provider.create_invoice(amount + surcharge, {"note": note, "user_id": user_id, "kind": kind.value})
    except ProviderError as e:
        log.warning("invoice_create_failed", user_id=user_id, kind=kind.value, amount=amount, error_kind=e.kind, error=e.message)
        await _undo_request(store, kind, user_id, product_key, qty)
        raise ProviderRejectedError(e) from e
    except Exception:
        log.exception("invoice_create_crashed", user_id=user_id, kind=kind.value, amount=amount)
        await _undo_request(store, kind, user_id, product_key, qty)
        raise

    payment = PendingPayment(
        payment_id=invoice.payment_id,
        user_id=user_id,
        kind=kind,
        amount=amount,
        total_due=invoice.total_due,
        fee_amount=invoice.fee_amount,
        surcharge=surcharge,
        product_key=product_key,
        product_title=product.title if product else None,
        qty=qty,
        pay_url=invoice.pay_url,
        qr_image_url=invoice.qr_image_url,
        qr_string=invoice.qr_string,
        expiry_minutes=invoice.expiry_minutes,
        created_at=now,
    )
    try:
        await pending.create(store, payment)
    except Exception:
        await _undo_request(store, kind, user_id, product_key, qty)
        raise
    return payment


async def _acquire_deposit_slot(store: KeyValueStore, user_id: str, now: datetime) -> None:
    try:
        await pending.acquire_owner(store, user_id)
        return
    except AlreadyPendingError as e:
        if e.payment_id is None:
            raise  # another request is creating an invoice right now
        existing = await pending.get(store, e.payment_id)
        if existing is not None and not existing.is_expired(now):
            raise
        if existing is None:
            await pending.release_owner(store, user_id, e.payment_id)
        else:
            await _expire(store, existing, now)
    await pending.acquire_owner(store, user_id)


async def _undo_request(store: KeyValueStore, kind: PaymentKind, user_id: str, product_key: str | None, qty: int) -> None:
    if kind == PaymentKind.DEPOSIT:
        await pending.release_owner(store, user_id)
    elif product_key:
        await inventory.release(store, product_key, qty)


# Confirmation


async def confirm(
    store: KeyValueStore,
    provider: PaymentProvider,
    payment_id: str,
    requesting_user_id: str,
    now: datetime | None = None,
) -> RenderableOutcome:
    """
    Check a payment and fulfil it if paid. Returns FULFILLED, EXPIRED, NOT_YET_PAID or
    ALREADY_PROCESSED; raises PaymentNotFoundError, ForbiddenError or FulfillmentError.
    """
    now = now or _now()
    payment = await pending.get(store, payment_id)
    if payment is None:
        raise PaymentNotFoundError()
    if payment.user_id != str(requesting_user_id):
        raise ForbiddenError("This payment belongs to another user")

    if payment.is_expired(now):
        expired = await _expire(store, payment, now)
        return RenderableOutcome(kind=OutcomeKind.EXPIRED, payment=expired or payment)

    try:
        status = await provider.check_status(payment_id)
    except ProviderError as e:
        log.warning("payment_check_failed", payment_id=payment_id, error_kind=e.kind, error=e.message)
        return RenderableOutcome(
            kind=OutcomeKind.NOT_YET_PAID,
            payment=payment,
            reason="provider_unavailable",
            message="Could not reach the payment provider. Please check again in a moment.",
            retryable=True,
        )
    if status != ProviderStatus.PAID:
        return RenderableOutcome(kind=OutcomeKind.NOT_YET_PAID, payment=payment, reason=status.value, retryable=True)

    if not await pending.claim(store, payment_id, "confirm"):
        return RenderableOutcome(kind=OutcomeKind.ALREADY_PROCESSED, payment=payment)
    current = await pending.get(store, payment_id)
    if current is None or current.status != PaymentStatus.PENDING:
        return RenderableOutcome(kind=OutcomeKind.ALREADY_PROCESSED, payment=current or payment)
    if current.is_expired(now):
        expired = await _expire(store, current, now, claimed=True)
        return RenderableOutcome(kind=OutcomeKind.EXPIRED, payment=expired or current)

    try:
        if current.kind == PaymentKind.DEPOSIT:
            details = await _fulfill_deposit(store, current)
        else:
            details = await _fulfill_purchase(store, current, now)
    except FulfillmentError:
        raise
    except Exception as e:
        log.exception("fulfillment_crashed", payment_id=payment_id, user_id=current.user_id)
        await pending.finalize(store, payment_id, PaymentStatus.FAILED, now, reason="internal_error")
        await audit.log_event(
            store, current.user_id, "fulfillment_failed", "payment", payment_id,
            {"reason": "internal_error", "error": str(e)[:500], "kind": current.kind.value},
        )
        raise

    finalized = await pending.finalize(store, payment_id, PaymentStatus.PAID, now)
    if finalized is None:
        log.error("paid_finalize_lost", payment_id=payment_id)
    if current.kind == PaymentKind.DEPOSIT:
        await statistics.record_event(store, statistics.DEPOSIT, current.amount, now=now)
    else:
        await statistics.record_event(store, statistics.PURCHASE, current.amount, current.product_title or current.product_key, now=now)
    log.info("payment_fulfilled", payment_id=payment_id, user_id=current.user_id, kind=current.kind.value, amount=current.amount)
    return RenderableOutcome(kind=OutcomeKind.FULFILLED, payment=finalized or current, details=details)


async def _fulfill_deposit(store: KeyValueStore, payment: PendingPayment) -> FulfillmentDetails:
    settings = await rewards.load_reward_settings(store)
    bonus = rewards.deposit_bonus(settings, payment.amount)
    # the nominal is credited, never the surcharged total
    _, balance = await ledger.credit(
        store,
        payment.user_id,
        payment.amount,
        TransactionType.DEPOSIT,
        product_label="QRIS deposit",
        reference=payment.payment_id,
        idempotency_key=f"deposit:{payment.payment_id}",
    )
    if bonus > 0:
        _, balance = await ledger.credit(
            store,
            payment.user_id,
            bonus,
            TransactionType.BONUS,
            product_label="Deposit bonus",
            reference=payment.payment_id,
            idempotency_key=f"deposit_bonus:{payment.payment_id}",
        )
    return FulfillmentDetails(
        payment_id=payment.payment_id,
        kind=PaymentKind.DEPOSIT,
        amount=payment.amount,
        credited=payment.amount + bonus,
        bonus=bonus,
        balance_after=balance,
    )


async def _fulfill_purchase(store: KeyValueStore, payment: PendingPayment, now: datetime) -> FulfillmentDetails:
    try:
        product, items = await inventory.take(store, payment.product_key, payment.qty, reserved=True)
    except (InsufficientStockError, ProductNotFoundError) as e:
        log.error("fulfillment_out_of_stock", payment_id=payment.payment_id, product_key=payment.product_key, qty=payment.qty)
        await pending.finalize(store, payment.payment_id, PaymentStatus.FAILED, now, reason="out_of_stock")
        await inventory.release(store, payment.product_key, payment.qty)
        await audit.log_event(
            store, payment.user_id, "fulfillment_failed", "payment", payment.payment_id,
            {"reason": "out_of_stock", "product_key": payment.product_key, "qty": payment.qty, "amount": payment.amount},
        )
        raise FulfillmentError(payment.payment_id, "out_of_stock") from e

    label = f"{product.title} x{payment.qty}"
    await ledger.record_transaction(store, payment.user_id, TransactionType.PURCHASE, payment.amount, label, payment.payment_id)
    cashback, unlocked, balance = await _after_purchase(store, payment.user_id, payment.amount, payment.payment_id)
    return FulfillmentDetails(
        payment_id=payment.payment_id,
        kind=PaymentKind.PURCHASE,
        amount=payment.amount,
        cashback=cashback,
        product_key=product.key,
        product_title=product.title,
        qty=payment.qty,
        items=items,
        manual_delivery=not product.list_backed,
        achievements=unlocked,
        balance_after=balance,
    )


async def _after_purchase(
    store: KeyValueStore,
    user_id: str,
    amount: int,
    reference: str,
) -> tuple[int, list[AchievementUnlock], int]:
    """Purchase counters, cashback and achievements. Returns (cashback, unlocked, balance)."""
    await ledger.record_purchase(store, user_id, amount)
    settings = await rewards.load_reward_settings(store)
    cashback = rewards.purchase_cashback(settings, amount)
    if cashback > 0:
        await ledger.credit(
            store,
            user_id,
            cashback,
            TransactionType.CASHBACK,
            product_label="Purchase cashback",
            reference=reference,
            idempotency_key=f"cashback:{reference}",
        )
    unlocked = await rewards.evaluate_achievements(store, user_id, settings)
    return cashback, unlocked, await ledger.get_balance(store, user_id)


# Cancellation and expiry


async def cancel(
    store: KeyValueStore,
    payment_id: str,
    requesting_user_id: str | None,
    operator: bool = False,
    now: datetime | None = None,
) -> PendingPayment:
    """Pending -> Cancelled by the owner or an operator. No ledger or stock effect beyond releasing the hold."""
    now = now or _now()
    payment = await pending.get(store, payment_id)
    if payment is None:
        archived = await pending.get_archived(store, payment_id)
        if archived is not None and _may_act(archived, requesting_user_id, operator):
            raise PaymentClosedError(payment_id, archived.status.value)
        raise PaymentNotFoundError()
    if not _may_act(payment, requesting_user_id, operator):
        raise ForbiddenError("Only the payment owner or an operator can cancel it")
    if not await pending.claim(store, payment_id, "cancel"):
        raise PaymentClosedError(payment_id, payment.status.value)
    cancelled = await pending.finalize(store, payment_id, PaymentStatus.CANCELLED, now, reason="cancelled")
    if cancelled is None:
        raise PaymentClosedError(payment_id)
    if cancelled.kind == PaymentKind.PURCHASE and cancelled.product_key:
        await inventory.release(store, cancelled.product_key, cancelled.qty)
    await audit.log_event(
        store, cancelled.user_id, "payment_cancelled", "payment", payment_id,
        {"by": str(requesting_user_id) if requesting_user_id else "operator", "amount": cancelled.amount},
    )
    return cancelled


async def _expire(store: KeyValueStore, payment: PendingPayment, now: datetime, claimed: bool = False) -> PendingPayment | None:
    if not claimed and not await pending.claim(store, payment.payment_id, "expire"):
        return None
    expired = await pending.finalize(store, payment.payment_id, PaymentStatus.EXPIRED, now, reason="expired")
    if expired and expired.kind == PaymentKind.PURCHASE and expired.product_key:
        await inventory.release(store, expired.product_key, expired.qty)
    return expired


async def sweep(store: KeyValueStore, now: datetime | None = None) -> list[PendingPayment]:
    now = now or _now()
    swept = await pending.sweep_expired(store, now)
    for payment in swept:
        if payment.kind == PaymentKind.PURCHASE and payment.product_key:
            await inventory.release(store, payment.product_key, payment.qty)
        await audit.log_event(
            store, payment.user_id, "payment_expired", "payment", payment.payment_id,
            {"kind": payment.kind.value, "amount": payment.amount},
        )
    return swept


# Balance purchases


async def pay_with_balance(store: KeyValueStore, user_id: str, product_key: str, qty: int = 1) -> FulfillmentDetails:
    """Buy from stock using the ledger balance instead of a QRIS invoice."""
    settings = get_settings()
    user_id = str(user_id)
    if qty < 1 or qty > settings.max_purchase_qty:
        raise InvalidQuantityError(qty, settings.max_purchase_qty)
    product = await inventory.reserve(store, product_key, qty)
    amount = product.price * qty
    label = f"{product.title} x{qty}"
    try:
        tx, _ = await ledger.debit(store, user_id, amount, TransactionType.PURCHASE, product_label=label)
    except Exception:
        await inventory.release(store, product_key, qty)
        raise
    try:
        product, items = await inventory.take(store, product_key, qty, reserved=True)
    except (InsufficientStockError, ProductNotFoundError):
        await ledger.credit(store, user_id, amount, TransactionType.DEPOSIT, product_label=f"Refund {label}", reference=tx.id)
        await inventory.release(store, product_key, qty)
        raise

    cashback, unlocked, balance = await _after_purchase(store, user_id, amount, tx.id)
    await statistics.record_event(store, statistics.PURCHASE, amount, product.title)
    log.info("balance_purchase", user_id=user_id, product_key=product_key, qty=qty, amount=amount)
    return FulfillmentDetails(
        payment_id=None,
        kind=PaymentKind.PURCHASE,
        amount=amount,
        cashback=cashback,
        product_key=product.key,
        product_title=product.title,
        qty=qty,
        items=items,
        manual_delivery=not product.list_backed,
        achievements=unlocked,
        balance_after=balance,
    )
