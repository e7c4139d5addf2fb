from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator

from app.core import audit
from app.core.exceptions import BadRequestError, NotFoundError, UserNotFoundError
from app.deps import get_kv_store, get_telegram_bot, require_admin
from app.models.outcome import OutcomeKind
from app.models.reward_settings import RewardSettings
from app.services import inventory, ledger, pending, rewards, statistics
from app.services import payments as payments_service
from app.services.notifications import close_invoice_message, deliver_expired_notice
from app.services.telegram import TelegramBot
from app.storage.base import KeyValueStore

router = APIRouter(dependencies=[Depends(require_admin)])


class ProductBody(BaseModel):
    title: str = Field(..., min_length=1)
    price: int = Field(..., ge=0)
    description: str = ""
    items: list[str] | None = None
    stock: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_inventory(self):
        if self.items is not None and self.stock is not None:
            raise ValueError("Set either items or stock, not both")
        return self


class ItemsBody(BaseModel):
    items: list[str] = Field(..., min_length=1)


@router.get("/pending")
async def admin_pending(store: KeyValueStore = Depends(get_kv_store)):
    """Open payments, oldest first. Stuck (claimed but unfinalized) ones show up here too."""
    payments = await pending.list_pending(store)
    payments.sort(key=lambda p: p.created_at)
    return {"items": [p.model_dump(mode="json") for p in payments], "total": len(payments)}


@router.post("/sweep")
async def admin_sweep(
    store: KeyValueStore = Depends(get_kv_store),
    bot: TelegramBot = Depends(get_telegram_bot),
):
    """Run the expiry sweep now and notify affected users."""
    notices = await payments_service.on_periodic_sweep(store)
    for notice in notices:
        await deliver_expired_notice(bot, notice)
    return {"expired": [n.payment_id for n in notices]}


@router.post("/payments/{payment_id}/cancel")
async def admin_cancel_payment(
    payment_id: str,
    store: KeyValueStore = Depends(get_kv_store),
    bot: TelegramBot = Depends(get_telegram_bot),
):
    outcome = await payments_service.on_cancel_tapped(store, payment_id, None, operator=True)
    if outcome.kind == OutcomeKind.ERROR:
        if outcome.reason == "PAYMENT_NOT_FOUND":
            raise NotFoundError(outcome.message or "Payment not found", code=outcome.reason)
        raise BadRequestError(outcome.message or "Cannot cancel payment", code=outcome.reason or "BAD_REQUEST")
    payment = outcome.payment
    await close_invoice_message(bot, payment.user_id, outcome)
    await bot.send_message(payment.user_id, f"Your payment <code>{payment.payment_id}</code> was cancelled by an admin.")
    return payment.model_dump(mode="json")


# Products


@router.get("/products")
async def admin_list_products(store: KeyValueStore = Depends(get_kv_store)):
    products = await inventory.list_products(store)
    return {
        "items": [
            {**p.model_dump(mode="json"), "stock": p.stock, "available": p.available}
            for p in sorted(products, key=lambda p: p.key)
        ]
    }


@router.put("/products/{product_key}")
async def admin_save_product(product_key: str, body: ProductBody, store: KeyValueStore = Depends(get_kv_store)):
    product = await inventory.save_product(
        store, product_key, body.title, body.price, body.description, items=body.items, stock=body.stock
    )
    await audit.log_event(store, None, "product_saved", "product", product_key, {"stock": product.stock})
    return product.model_dump(mode="json")


@router.post("/products/{product_key}/items")
async def admin_add_items(product_key: str, body: ItemsBody, store: KeyValueStore = Depends(get_kv_store)):
    product = await inventory.add_items(store, product_key, body.items)
    await audit.log_event(store, None, "product_items_added", "product", product_key, {"count": len(body.items)})
    return {"key": product.key, "stock": product.stock, "available": product.available}


@router.delete("/products/{product_key}")
async def admin_delete_product(product_key: str, store: KeyValueStore = Depends(get_kv_store)):
    await inventory.remove_product(store, product_key)
    await audit.log_event(store, None, "product_removed", "product", product_key)
    return {"deleted": product_key}


# Rewards, statistics, users


@router.get("/rewards")
async def admin_get_rewards(store: KeyValueStore = Depends(get_kv_store)):
    return (await rewards.load_reward_settings(store)).model_dump(mode="json")


@router.put("/rewards")
async def admin_put_rewards(body: RewardSettings, store: KeyValueStore = Depends(get_kv_store)):
    saved = await rewards.save_reward_settings(store, body)
    await audit.log_event(store, None, "reward_settings_updated", "settings", "rewards")
    return saved.model_dump(mode="json")


@router.get("/statistics")
async def admin_statistics(store: KeyValueStore = Depends(get_kv_store)):
    return await statistics.get_statistics(store)


@router.get("/audit")
async def admin_audit(
    limit: int = Query(50, ge=1, le=500),
    store: KeyValueStore = Depends(get_kv_store),
):
    return {"items": await audit.recent_events(store, limit)}


@router.get("/users/{user_id}")
async def admin_get_user(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    store: KeyValueStore = Depends(get_kv_store),
):
    user = await ledger.get_user(store, user_id)
    if user is None:
        raise UserNotFoundError()
    history = await ledger.get_history(store, user_id, limit)
    return {
        "user": user.model_dump(mode="json"),
        "transactions": [tx.model_dump(mode="json") for tx in history],
    }
