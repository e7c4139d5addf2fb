from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from app.core.logging import bind_telegram_context, get_logger
from app.deps import get_kv_store, get_payment_provider, get_telegram_bot, verify_telegram_secret
from app.models.outcome import RenderableOutcome
from app.models.pending_payment import PaymentKind
from app.services import payments as payments_service
from app.services import ledger, users
from app.services.notifications import close_invoice_message, deliver_outcome, notify_operator
from app.services.qris import PaymentProvider
from app.services.render import render_outcome, rupiah
from app.services.telegram import TelegramBot
from app.storage.base import KeyValueStore

router = APIRouter()
log = get_logger(__name__)

HELP_TEXT = (
    "<b>Premium Store</b>\n\n"
    "/deposit &lt;amount&gt; top up your balance via QRIS\n"
    "/buy &lt;product&gt; [qty] buy a product via QRIS\n\n"
    'After paying, tap "Check payment".'
)


class TelegramUser(BaseModel):
    id: int
    username: str | None = None


class TelegramChat(BaseModel):
    id: int


class TelegramMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: int
    from_user: TelegramUser | None = Field(default=None, alias="from")
    chat: TelegramChat
    text: str | None = None


class TelegramCallbackQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_user: TelegramUser = Field(alias="from")
    message: TelegramMessage | None = None
    data: str | None = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: TelegramMessage | None = None
    callback_query: TelegramCallbackQuery | None = None


def _parse_int(value: str | None, default: int | None = None) -> int | None:
    if value is None:
        return default
    try:
        return int(value.replace(".", "").replace(",", ""))
    except ValueError:
        return None


@router.post("/webhook", dependencies=[Depends(verify_telegram_secret)])
async def telegram_webhook(
    update: TelegramUpdate,
    store: KeyValueStore = Depends(get_kv_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    bot: TelegramBot = Depends(get_telegram_bot),
):
    """Telegram update -> core entry point -> rendered reply. Always 200 so Telegram does not redeliver."""
    if update.callback_query:
        cb = update.callback_query
        bind_telegram_context(update.update_id, str(cb.from_user.id))
        await _handle_callback(cb, store, provider, bot)
    elif update.message and update.message.text and update.message.from_user:
        bind_telegram_context(update.update_id, str(update.message.from_user.id))
        await _handle_message(update.message, store, provider, bot)
    return {"ok": True}


async def _handle_message(msg: TelegramMessage, store: KeyValueStore, provider: PaymentProvider, bot: TelegramBot) -> None:
    user_id = str(msg.from_user.id)
    words = msg.text.split()
    if not words:
        return
    command, args = words[0].split("@", 1)[0].lower(), words[1:]

    if command == "/start":
        await users.get_or_create_user(store, user_id, msg.from_user.username)
        balance = await ledger.get_balance(store, user_id)
        await bot.send_message(msg.chat.id, f"{HELP_TEXT}\n\nBalance: {rupiah(balance)}")
        return
    if command == "/deposit":
        amount = _parse_int(args[0] if args else None)
        if amount is None:
            await bot.send_message(msg.chat.id, "Usage: /deposit &lt;amount&gt;")
            return
        outcome = await payments_service.on_payment_requested(store, provider, PaymentKind.DEPOSIT, user_id, amount)
        await deliver_outcome(bot, store, msg.chat.id, outcome)
        return
    if command == "/buy":
        qty = _parse_int(args[1] if len(args) > 1 else None, default=1)
        if not args or qty is None:
            await bot.send_message(msg.chat.id, "Usage: /buy &lt;product&gt; [qty]")
            return
        outcome = await payments_service.on_payment_requested(
            store, provider, PaymentKind.PURCHASE, user_id, product_key=args[0], qty=qty
        )
        await deliver_outcome(bot, store, msg.chat.id, outcome)
        return
    await bot.send_message(msg.chat.id, HELP_TEXT)


async def _handle_callback(cb: TelegramCallbackQuery, store: KeyValueStore, provider: PaymentProvider, bot: TelegramBot) -> None:
    user_id = str(cb.from_user.id)
    chat_id = cb.message.chat.id if cb.message else cb.from_user.id
    action, _, rest = (cb.data or "").partition(":")

    outcome: RenderableOutcome
    if action == "check" and rest:
        outcome = await payments_service.on_confirm_tapped(store, provider, rest, user_id)
    elif action == "cancel" and rest:
        outcome = await payments_service.on_cancel_tapped(store, rest, user_id)
    elif action in ("buy", "buybal") and rest:
        product_key, _, qty_text = rest.rpartition(":")
        if not product_key:
            product_key, qty_text = qty_text, "1"
        qty = _parse_int(qty_text)
        if qty is None:
            await bot.answer_callback_query(cb.id, "Invalid quantity", show_alert=True)
            return
        if action == "buy":
            outcome = await payments_service.on_payment_requested(
                store, provider, PaymentKind.PURCHASE, user_id, product_key=product_key, qty=qty
            )
        else:
            outcome = await payments_service.on_balance_purchase(store, user_id, product_key, qty)
    else:
        log.info("telegram_unknown_callback", data=cb.data)
        await bot.answer_callback_query(cb.id, "Unknown command", show_alert=True)
        return

    rendered = render_outcome(outcome)
    if rendered.alert:
        await bot.answer_callback_query(cb.id, rendered.text, show_alert=True)
        await close_invoice_message(bot, chat_id, outcome)
        await notify_operator(bot, outcome.operator_notice)
        return
    await bot.answer_callback_query(cb.id)
    await deliver_outcome(bot, store, chat_id, outcome)
