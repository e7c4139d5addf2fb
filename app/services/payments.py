"""Entry points called by the webhook routers; every result is a RenderableOutcome."""

from datetime import datetime
from typing import Any

from app.core.exceptions import (
    AlreadyPendingError,
    AppError,
    FulfillmentError,
    PaymentNotFoundError,
    StoreError,
)
from app.core.logging import get_logger
from app.models.outcome import ExpiredNotice, OutcomeKind, RenderableOutcome
from app.models.pending_payment import PaymentKind
from app.services import fulfillment, pending
from app.services.qris import PaymentProvider, extract_payment_id
from app.storage.base import KeyValueStore

log = get_logger(__name__)


def error_outcome(exc: AppError) -> RenderableOutcome:
    return RenderableOutcome(
        kind=OutcomeKind.ERROR,
        reason=exc.code,
        message=exc.message,
        retryable=exc.retryable,
    )


def internal_error_outcome() -> RenderableOutcome:
    return RenderableOutcome(
        kind=OutcomeKind.ERROR,
        reason="INTERNAL_ERROR",
        message="Something went wrong. Please try again later.",
        retryable=True,
    )


async def on_payment_requested(
    store: KeyValueStore,
    provider: PaymentProvider,
    kind: PaymentKind,
    user_id: str,
    amount: int = 0,
    product_key: str | None = None,
    qty: int = 1,
) -> RenderableOutcome:
    try:
        payment = await fulfillment.request_payment(store, provider, kind, user_id, amount, product_key, qty)
    except AlreadyPendingError as e:
        existing = await pending.get(store, e.payment_id) if e.payment_id else None
        return RenderableOutcome(kind=OutcomeKind.ALREADY_PENDING, payment=existing, reason=e.code, message=e.message)
    except StoreError:
        log.exception("payment_request_store_error", user_id=user_id, kind=kind.value)
        return internal_error_outcome()
    except AppError as e:
        log.info("payment_request_rejected", user_id=user_id, kind=kind.value, code=e.code)
        return error_outcome(e)
    return RenderableOutcome(kind=OutcomeKind.CREATED, payment=payment)


async def on_confirm_tapped(
    store: KeyValueStore,
    provider: PaymentProvider,
    payment_id: str,
    user_id: str,
    now: datetime | None = None,
) -> RenderableOutcome:
    try:
        return await fulfillment.confirm(store, provider, payment_id, user_id, now=now)
    except FulfillmentError as e:
        outcome = error_outcome(e)
        outcome.payment = await pending.get_archived(store, payment_id)
        outcome.operator_notice = (
            f"Fulfillment failed for payment {payment_id} (user {user_id}): {e.reason}. Manual handling required."
        )
        return outcome
    except StoreError:
        log.exception("payment_confirm_store_error", payment_id=payment_id, user_id=user_id)
        return internal_error_outcome()
    except AppError as e:
        return error_outcome(e)


async def on_cancel_tapped(
    store: KeyValueStore,
    payment_id: str,
    user_id: str | None,
    operator: bool = False,
) -> RenderableOutcome:
    try:
        payment = await fulfillment.cancel(store, payment_id, user_id, operator=operator)
    except StoreError:
        log.exception("payment_cancel_store_error", payment_id=payment_id, user_id=user_id)
        return internal_error_outcome()
    except AppError as e:
        return error_outcome(e)
    return RenderableOutcome(kind=OutcomeKind.CANCELLED, payment=payment)


async def on_periodic_sweep(store: KeyValueStore, now: datetime | None = None) -> list[ExpiredNotice]:
    swept = await fulfillment.sweep(store, now)
    return [
        ExpiredNotice(
            payment_id=p.payment_id,
            user_id=p.user_id,
            kind=p.kind,
            amount=p.amount,
            product_title=p.product_title,
            message_id=p.message_id,
        )
        for p in swept
    ]


async def on_provider_callback(
    store: KeyValueStore,
    provider: PaymentProvider,
    payload: dict[str, Any],
) -> RenderableOutcome | None:
    """
    Provider push notification. The payload only tells us which payment to look at;
    the paid state is always re-verified through check_status. Returns None when the
    payment is unknown or already processed (nothing to tell anyone).
    """
    payment_id = extract_payment_id(payload)
    if not payment_id:
        log.warning("provider_callback_without_id", keys=sorted(payload))
        return None
    payment = await pending.get(store, payment_id)
    if payment is None:
        log.info("provider_callback_unknown_payment", payment_id=payment_id)
        return None
    outcome = await on_confirm_tapped(store, provider, payment_id, payment.user_id)
    if outcome.kind == OutcomeKind.ERROR and outcome.reason == PaymentNotFoundError().code:
        return None
    return outcome


async def on_balance_purchase(store: KeyValueStore, user_id: str, product_key: str, qty: int = 1) -> RenderableOutcome:
    try:
        details = await fulfillment.pay_with_balance(store, user_id, product_key, qty)
    except StoreError:
        log.exception("balance_purchase_store_error", user_id=user_id, product_key=product_key)
        return internal_error_outcome()
    except AppError as e:
        return error_outcome(e)
    return RenderableOutcome(kind=OutcomeKind.FULFILLED, details=details)
