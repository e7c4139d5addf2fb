"""Payment lifecycle: request, confirm, cancel, expire, balance purchase."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from app.core import audit
from app.core.exceptions import (
    AlreadyPendingError,
    ForbiddenError,
    FulfillmentError,
    InsufficientBalanceError,
    InsufficientStockError,
    InvalidAmountError,
    InvalidQuantityError,
    PaymentClosedError,
    PaymentNotFoundError,
    ProviderError,
    ProviderRejectedError,
)
from app.models.outcome import OutcomeKind
from app.models.pending_payment import PaymentKind, PaymentStatus
from app.models.transaction import TransactionType
from app.services import fulfillment, inventory, ledger, pending, statistics
from app.services.qris import QrisClient
from app.storage import keys

pytestmark = pytest.mark.asyncio

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


async def _deposit(store, provider, user_id="1", amount=10000, now=T0):
    return await fulfillment.request_payment(store, provider, PaymentKind.DEPOSIT, user_id, amount, now=now)


async def _purchase(store, provider, user_id="1", product_key="netflix", qty=1, now=T0):
    return await fulfillment.request_payment(
        store, provider, PaymentKind.PURCHASE, user_id, product_key=product_key, qty=qty, now=now
    )


# Deposits


async def test_deposit_credits_nominal_plus_bonus(store, provider):
    provider.fee = 144
    payment = await _deposit(store, provider)
    assert payment.total_due == 10144
    provider.mark_paid(payment.payment_id)

    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0 + timedelta(minutes=1))

    assert outcome.kind == OutcomeKind.FULFILLED
    assert outcome.details.bonus == 500
    assert outcome.details.balance_after == 10500
    history = await ledger.get_history(store, "1")
    assert sorted(tx.type for tx in history) == [TransactionType.BONUS, TransactionType.DEPOSIT]
    assert await pending.get(store, payment.payment_id) is None
    assert (await pending.get_archived(store, payment.payment_id)).status == PaymentStatus.PAID
    assert (await statistics.get_statistics(store))["total_revenue"] == 10000


async def test_deposit_below_minimum_rejected(store, provider):
    with pytest.raises(InvalidAmountError):
        await _deposit(store, provider, amount=9999)
    assert provider.created == []


async def test_one_active_deposit_per_user(store, provider):
    first = await _deposit(store, provider)
    with pytest.raises(AlreadyPendingError) as exc:
        await _deposit(store, provider, amount=20000)
    assert exc.value.payment_id == first.payment_id
    # other users are not affected
    await _deposit(store, provider, user_id="2")


async def test_expired_deposit_frees_the_slot(store, provider):
    first = await _deposit(store, provider)
    second = await _deposit(store, provider, now=T0 + timedelta(minutes=16))
    assert second.payment_id != first.payment_id
    assert (await pending.get_archived(store, first.payment_id)).status == PaymentStatus.EXPIRED


async def test_provider_failure_on_create_releases_slot(store, provider):
    provider.create_error = ProviderError(ProviderError.HTTP_STATUS, "boom", 500)
    with pytest.raises(ProviderRejectedError):
        await _deposit(store, provider)
    provider.create_error = None
    await _deposit(store, provider)


async def test_unexpected_create_error_releases_slot(store, provider):
    provider.create_error = RuntimeError("provider client bug")
    with pytest.raises(RuntimeError):
        await _deposit(store, provider)
    assert await store.get(keys.pending_owner("1")) is None


async def test_malformed_invoice_releases_reservation(store, netflix):
    body = {"success": True, "trxid": "A1", "qr": {"url": "https://qr.test/a.png"}}
    qris = QrisClient(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body))))
    qris.create_url = "https://qris.test/create"

    with pytest.raises(ProviderRejectedError):
        await _purchase(store, qris, qty=2)
    await qris.close()

    product = await inventory.get_product(store, "netflix")
    assert (product.stock, product.reserved) == (3, 0)
    assert await pending.list_pending(store) == []


async def test_surcharge_added_to_invoice_but_not_credited(store, provider, settings, monkeypatch):
    monkeypatch.setattr(settings, "payment_surcharge_min", 7)
    monkeypatch.setattr(settings, "payment_surcharge_max", 7)
    payment = await _deposit(store, provider)
    assert payment.surcharge == 7
    assert provider.created[0][1] == 10007
    provider.mark_paid(payment.payment_id)
    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)
    assert outcome.details.amount == 10000


# Purchases


async def test_purchase_reserves_stock(store, provider, netflix):
    await _purchase(store, provider, user_id="1", qty=2)
    with pytest.raises(InsufficientStockError):
        await _purchase(store, provider, user_id="2", qty=2)
    product = await inventory.get_product(store, "netflix")
    assert (product.stock, product.reserved) == (3, 2)


async def test_purchase_quantity_bounds(store, provider, netflix, settings):
    with pytest.raises(InvalidQuantityError):
        await _purchase(store, provider, qty=0)
    with pytest.raises(InvalidQuantityError):
        await _purchase(store, provider, qty=settings.max_purchase_qty + 1)


async def test_purchase_delivers_items_and_rewards(store, provider, netflix):
    payment = await _purchase(store, provider, qty=2)
    provider.mark_paid(payment.payment_id)

    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)

    assert outcome.kind == OutcomeKind.FULFILLED
    assert outcome.details.items == ["acc-1", "acc-2"]
    assert outcome.details.cashback == 1000  # 2% of 50000
    assert [a.id for a in outcome.details.achievements] == ["firstPurchase"]
    assert outcome.details.balance_after == 1000 + 2000
    product = await inventory.get_product(store, "netflix")
    assert (product.stock, product.reserved, product.inventory.items) == (1, 0, ["acc-3"])
    user = await ledger.get_user(store, "1")
    assert (user.purchase_count, user.total_spent) == (1, 50000)


async def test_counter_product_is_manual_delivery(store, provider, spotify):
    payment = await _purchase(store, provider, product_key="spotify")
    provider.mark_paid(payment.payment_id)
    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)
    assert outcome.details.manual_delivery
    assert outcome.details.items == []
    assert (await inventory.get_product(store, "spotify")).stock == 4


async def test_concurrent_confirms_fulfil_once(store, provider, netflix):
    payment = await _purchase(store, provider)
    provider.mark_paid(payment.payment_id)

    outcomes = await asyncio.gather(
        fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0),
        fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0),
        return_exceptions=True,
    )

    fulfilled = [o for o in outcomes if not isinstance(o, Exception) and o.kind == OutcomeKind.FULFILLED]
    assert len(fulfilled) == 1
    for o in outcomes:
        if o is not fulfilled[0]:
            assert isinstance(o, PaymentNotFoundError) or o.kind == OutcomeKind.ALREADY_PROCESSED
    purchases = [tx for tx in await ledger.get_history(store, "1") if tx.type == TransactionType.PURCHASE]
    assert len(purchases) == 1
    assert (await inventory.get_product(store, "netflix")).stock == 2


async def test_concurrent_deposit_confirms_credit_once(store, provider):
    payment = await _deposit(store, provider)
    provider.mark_paid(payment.payment_id)

    outcomes = await asyncio.gather(
        *[fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0) for _ in range(3)],
        return_exceptions=True,
    )

    fulfilled = [o for o in outcomes if not isinstance(o, Exception) and o.kind == OutcomeKind.FULFILLED]
    assert len(fulfilled) == 1
    history = await ledger.get_history(store, "1")
    assert sorted(tx.type for tx in history) == [TransactionType.BONUS, TransactionType.DEPOSIT]
    assert await ledger.get_balance(store, "1") == 10500


async def test_expired_payment_never_fulfils(store, provider, netflix):
    payment = await _purchase(store, provider)
    provider.mark_paid(payment.payment_id)

    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0 + timedelta(minutes=16))

    assert outcome.kind == OutcomeKind.EXPIRED
    assert provider.check_calls == 0
    assert await ledger.get_history(store, "1") == []
    product = await inventory.get_product(store, "netflix")
    assert (product.stock, product.reserved) == (3, 0)


async def test_provider_timeout_keeps_payment_pending(store, provider):
    payment = await _deposit(store, provider)
    provider.check_error = ProviderError(ProviderError.NETWORK, "timed out")

    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)

    assert outcome.kind == OutcomeKind.NOT_YET_PAID
    assert outcome.retryable
    assert (await pending.get(store, payment.payment_id)).status == PaymentStatus.PENDING
    assert await store.get(keys.payment_claim(payment.payment_id)) is None


async def test_unpaid_confirm_changes_nothing(store, provider):
    payment = await _deposit(store, provider)
    outcome = await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)
    assert outcome.kind == OutcomeKind.NOT_YET_PAID
    assert await ledger.get_balance(store, "1") == 0


async def test_confirm_by_other_user_forbidden(store, provider):
    payment = await _deposit(store, provider)
    with pytest.raises(ForbiddenError):
        await fulfillment.confirm(store, provider, payment.payment_id, "2", now=T0)
    with pytest.raises(PaymentNotFoundError):
        await fulfillment.confirm(store, provider, "nope", "1", now=T0)


async def test_out_of_stock_at_fulfilment_fails_payment(store, provider, netflix):
    payment = await _purchase(store, provider, qty=3)
    # operator shrinks the item list while the invoice is open
    await inventory.save_product(store, "netflix", "Netflix Premium", 25000, items=["acc-1"])
    provider.mark_paid(payment.payment_id)

    with pytest.raises(FulfillmentError) as exc:
        await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)

    assert exc.value.reason == "out_of_stock"
    assert (await pending.get_archived(store, payment.payment_id)).status == PaymentStatus.FAILED
    assert (await inventory.get_product(store, "netflix")).reserved == 0
    events = await audit.recent_events(store)
    assert events[0]["event_type"] == "fulfillment_failed"


# Cancellation and sweep


async def test_cancel_releases_reservation(store, provider, netflix):
    payment = await _purchase(store, provider, qty=2)
    cancelled = await fulfillment.cancel(store, payment.payment_id, "1")
    assert cancelled.status == PaymentStatus.CANCELLED
    assert (await inventory.get_product(store, "netflix")).reserved == 0
    with pytest.raises(PaymentClosedError):
        await fulfillment.cancel(store, payment.payment_id, "1")


async def test_cancel_permissions(store, provider):
    payment = await _deposit(store, provider)
    with pytest.raises(ForbiddenError):
        await fulfillment.cancel(store, payment.payment_id, "2")
    # configured operator user id
    await fulfillment.cancel(store, payment.payment_id, "777")
    # closed payments look missing to strangers
    with pytest.raises(PaymentNotFoundError):
        await fulfillment.cancel(store, payment.payment_id, "2")


async def test_cancel_then_confirm_does_not_fulfil(store, provider):
    payment = await _deposit(store, provider)
    provider.mark_paid(payment.payment_id)
    await fulfillment.cancel(store, payment.payment_id, "1")
    with pytest.raises(PaymentNotFoundError):
        await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)
    assert await ledger.get_balance(store, "1") == 0


async def test_sweep_releases_reserved_stock(store, provider, netflix):
    await _purchase(store, provider, qty=2)
    swept = await fulfillment.sweep(store, now=T0 + timedelta(minutes=30))
    assert len(swept) == 1
    assert (await inventory.get_product(store, "netflix")).reserved == 0


# Balance purchases


async def test_pay_with_balance(store, provider, netflix):
    payment = await _deposit(store, provider, amount=50000)
    provider.mark_paid(payment.payment_id)
    await fulfillment.confirm(store, provider, payment.payment_id, "1", now=T0)
    balance = await ledger.get_balance(store, "1")

    details = await fulfillment.pay_with_balance(store, "1", "netflix")

    assert details.items == ["acc-1"]
    assert details.payment_id is None
    # 25000 debited, 500 cashback, 2000 first-purchase achievement
    assert details.balance_after == balance - 25000 + 500 + 2000


async def test_pay_with_balance_insufficient_releases_hold(store, netflix):
    from app.services import users

    await users.get_or_create_user(store, "1")
    with pytest.raises(InsufficientBalanceError):
        await fulfillment.pay_with_balance(store, "1", "netflix")
    assert (await inventory.get_product(store, "netflix")).reserved == 0
