"""Balances and transaction history; balance updates are atomic per user."""

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, InsufficientBalanceError, UserNotFoundError
from app.core.logging import get_logger
from app.models.transaction import Transaction, TransactionType
from app.models.user import User
from app.storage import keys
from app.storage.base import KeyValueStore

log = get_logger(__name__)

IDEMPOTENCY_TTL_SECONDS = 90 * 24 * 3600


async def get_user(store: KeyValueStore, user_id: str) -> User | None:
    doc = await store.get(keys.user(user_id))
    return User.model_validate(doc) if doc else None


async def get_balance(store: KeyValueStore, user_id: str) -> int:
    """Return current balance for user (0 if no record)."""
    user = await get_user(store, user_id)
    return user.balance if user else 0


async def apply_ledger_entry(
    store: KeyValueStore,
    user_id: str,
    delta: int,
    tx_type: TransactionType,
    product_label: str = "",
    reference: str | None = None,
    idempotency_key: str | None = None,
) -> tuple[Transaction, int]:
    """
    Atomically change the balance by `delta` and append a history entry.
    Returns (transaction, balance_after).
    Idempotency: if idempotency_key was already applied, return the original entry and do not double-apply.
    """
    idem_key = keys.ledger_idempotency(idempotency_key) if idempotency_key else None
    if idem_key and not await store.add(idem_key, {"state": "applying"}, ttl_seconds=IDEMPOTENCY_TTL_SECONDS):
        existing = await store.get(idem_key)
        if existing and "transaction" in existing:
            return Transaction.model_validate(existing["transaction"]), await get_balance(store, user_id)
        raise ConflictError("Ledger entry is already being applied", details={"idempotency_key": idempotency_key})

    def mutate(doc):
        if doc is None:
            raise UserNotFoundError()
        user = User.model_validate(doc)
        if user.balance + delta < 0:
            raise InsufficientBalanceError(user.balance, -delta)
        user.balance += delta
        user.version += 1
        return user.model_dump(mode="json")

    try:
        doc = await store.update(keys.user(user_id), mutate)
    except Exception:
        if idem_key:
            await store.delete(idem_key)
        raise

    tx = Transaction(
        user_id=user_id,
        type=tx_type,
        amount=abs(delta),
        product_label=product_label,
        reference=reference,
        balance_after=doc["balance"],
    )
    await append_history(store, tx)
    if idem_key:
        await store.put(idem_key, {"state": "applied", "transaction": tx.model_dump(mode="json")}, ttl_seconds=IDEMPOTENCY_TTL_SECONDS)
    log.info("ledger_entry", user_id=user_id, type=tx_type.value, delta=delta, balance_after=tx.balance_after, reference=reference)
    return tx, doc["balance"]


async def credit(
    store: KeyValueStore,
    user_id: str,
    amount: int,
    tx_type: TransactionType = TransactionType.DEPOSIT,
    **kwargs,
) -> tuple[Transaction, int]:
    if amount <= 0:
        raise BadRequestError(f"Credit amount must be positive, got {amount}")
    return await apply_ledger_entry(store, user_id, amount, tx_type, **kwargs)


async def debit(
    store: KeyValueStore,
    user_id: str,
    amount: int,
    tx_type: TransactionType = TransactionType.PURCHASE,
    **kwargs,
) -> tuple[Transaction, int]:
    if amount <= 0:
        raise BadRequestError(f"Debit amount must be positive, got {amount}")
    return await apply_ledger_entry(store, user_id, -amount, tx_type, **kwargs)


async def record_transaction(
    store: KeyValueStore,
    user_id: str,
    tx_type: TransactionType,
    amount: int,
    product_label: str = "",
    reference: str | None = None,
) -> Transaction:
    """History entry without a balance effect (e.g. a purchase paid by QRIS)."""
    tx = Transaction(user_id=user_id, type=tx_type, amount=amount, product_label=product_label, reference=reference)
    await append_history(store, tx)
    return tx


async def append_history(store: KeyValueStore, tx: Transaction) -> None:
    limit = get_settings().transaction_history_limit

    def mutate(doc):
        entries = list(doc or [])
        entries.append(tx.model_dump(mode="json"))
        return entries[-limit:]

    await store.update(keys.transactions(tx.user_id), mutate)


async def get_history(store: KeyValueStore, user_id: str, limit: int | None = None) -> list[Transaction]:
    """Newest first."""
    entries = await store.get(keys.transactions(user_id)) or []
    out = [Transaction.model_validate(e) for e in reversed(entries)]
    return out[:limit] if limit else out


async def record_purchase(store: KeyValueStore, user_id: str, amount: int) -> User:
    """Bump purchase counters used by achievements."""

    def mutate(doc):
        if doc is None:
            raise UserNotFoundError()
        user = User.model_validate(doc)
        user.purchase_count += 1
        user.total_spent += amount
        user.version += 1
        return user.model_dump(mode="json")

    return User.model_validate(await store.update(keys.user(user_id), mutate))
