"""Turn outcomes into chat messages."""

from html import escape

from pydantic import BaseModel

from app.models.outcome import ExpiredNotice, OutcomeKind, RenderableOutcome
from app.models.pending_payment import PaymentKind


class ChatMessage(BaseModel):
    text: str
    reply_markup: dict | None = None
    photo: str | None = None
    alert: bool = False  # short enough to show as a callback-query popup


def rupiah(n: int | None) -> str:
    return "Rp " + f"{n or 0:,}".replace(",", ".")


def _payment_keyboard(payment_id: str) -> dict:
    return {
        "inline_keyboard": [
            [{"text": "Check payment", "callback_data": f"check:{payment_id}"}],
            [{"text": "Cancel", "callback_data": f"cancel:{payment_id}"}],
        ]
    }


def render_outcome(outcome: RenderableOutcome) -> ChatMessage:
    p = outcome.payment
    kind = outcome.kind
    if kind == OutcomeKind.CREATED and p is not None:
        what = "Deposit" if p.kind == PaymentKind.DEPOSIT else f"{escape(p.product_title or p.product_key or '')} x{p.qty}"
        lines = [
            f"<b>Invoice</b> <code>{escape(p.payment_id)}</code>",
            f"Order: {what}",
            f"Amount: {rupiah(p.amount)}",
            f"Total to pay: <b>{rupiah(p.total_due)}</b> (pay this exact amount)",
            f"Expires in {p.expiry_minutes} minutes.",
            "",
            'Pay with any QRIS app, then tap "Check payment".',
        ]
        if not p.qr_image_url and p.qr_string:
            lines.append(f"\n<code>{escape(p.qr_string)}</code>")
        if p.pay_url:
            lines.append(f"\n{escape(p.pay_url)}")
        return ChatMessage(text="\n".join(lines), reply_markup=_payment_keyboard(p.payment_id), photo=p.qr_image_url)
    if kind == OutcomeKind.ALREADY_PENDING:
        text = "You already have a pending payment. Pay or cancel it first."
        return ChatMessage(text=text, reply_markup=_payment_keyboard(p.payment_id) if p else None, alert=True)
    if kind == OutcomeKind.NOT_YET_PAID:
        text = outcome.message or "Payment not detected yet. Please wait a moment and check again."
        return ChatMessage(text=text, alert=True)
    if kind == OutcomeKind.EXPIRED:
        return ChatMessage(text="This payment has expired. Please create a new one.", alert=True)
    if kind == OutcomeKind.CANCELLED:
        return ChatMessage(text="Payment cancelled.", alert=True)
    if kind == OutcomeKind.ALREADY_PROCESSED:
        return ChatMessage(text="This payment is already being processed.", alert=True)
    if kind == OutcomeKind.FULFILLED and outcome.details is not None:
        return ChatMessage(text=_fulfilled_text(outcome))
    text = outcome.message or "Something went wrong. Please try again later."
    if outcome.reason == "FULFILLMENT_FAILED" and p is not None:
        return ChatMessage(text=f"{escape(text)}\nPayment id: <code>{escape(p.payment_id)}</code>")
    # popups are plain text
    return ChatMessage(text=text, alert=True)


def _fulfilled_text(outcome: RenderableOutcome) -> str:
    d = outcome.details
    if d.kind == PaymentKind.DEPOSIT:
        lines = ["<b>Deposit confirmed</b>", f"Credited: {rupiah(d.amount)}"]
        if d.bonus:
            lines.append(f"Bonus: {rupiah(d.bonus)}")
    else:
        lines = [
            "<b>Payment confirmed</b>",
            f"Product: <b>{escape(d.product_title or '')}</b>",
            f"Quantity: {d.qty}",
            f"Total: {rupiah(d.amount)}",
            "",
        ]
        if d.items:
            lines += [f"{i}. <code>{escape(item)}</code>" for i, item in enumerate(d.items, 1)]
        else:
            lines.append("Your order will be delivered manually by the admin.")
        if d.cashback:
            lines.append(f"\nCashback: {rupiah(d.cashback)}")
        for a in d.achievements:
            lines.append(f"Achievement unlocked: {escape(a.title)} (+{rupiah(a.reward)})")
    if d.balance_after is not None:
        lines.append(f"Balance: {rupiah(d.balance_after)}")
    return "\n".join(lines)


def render_expired_notice(notice: ExpiredNotice) -> ChatMessage:
    what = "deposit" if notice.kind == PaymentKind.DEPOSIT else escape(notice.product_title or "order")
    return ChatMessage(
        text=f"Your payment <code>{escape(notice.payment_id)}</code> for {what} ({rupiah(notice.amount)}) has expired."
    )
