"""Deliver rendered outcomes to Telegram chats."""

from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.outcome import ExpiredNotice, OutcomeKind, RenderableOutcome
from app.services import pending
from app.services.render import render_expired_notice, render_outcome
from app.services.telegram import TelegramBot
from app.storage.base import KeyValueStore

log = get_logger(__name__)

CLOSES_INVOICE = (OutcomeKind.FULFILLED, OutcomeKind.EXPIRED, OutcomeKind.CANCELLED)


async def deliver_outcome(bot: TelegramBot, store: KeyValueStore, chat_id: str | int, outcome: RenderableOutcome) -> None:
    msg = render_outcome(outcome)
    if msg.photo:
        sent = await bot.send_photo(chat_id, msg.photo, msg.text, msg.reply_markup)
    else:
        sent = await bot.send_message(chat_id, msg.text, msg.reply_markup)
    if outcome.kind == OutcomeKind.CREATED and sent and outcome.payment:
        await pending.attach_message(store, outcome.payment.payment_id, sent["message_id"])
    await close_invoice_message(bot, chat_id, outcome)
    await notify_operator(bot, outcome.operator_notice)


async def close_invoice_message(bot: TelegramBot, chat_id: str | int, outcome: RenderableOutcome) -> None:
    if outcome.kind in CLOSES_INVOICE and outcome.payment and outcome.payment.message_id:
        await bot.delete_message(chat_id, outcome.payment.message_id)


async def notify_operator(bot: TelegramBot, text: str | None) -> None:
    chat_id = get_settings().operator_chat_id
    if not text:
        return
    if not chat_id:
        log.warning("operator_chat_not_configured", notice=text)
        return
    await bot.send_message(chat_id, text)


async def deliver_expired_notice(bot: TelegramBot, notice: ExpiredNotice) -> None:
    if notice.message_id:
        await bot.delete_message(notice.user_id, notice.message_id)
    await bot.send_message(notice.user_id, render_expired_notice(notice).text)
