import orjson
from fastapi import APIRouter, Depends, Header, Request

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.core.security import verify_callback_signature
from app.deps import get_kv_store, get_payment_provider, get_telegram_bot
from app.models.outcome import OutcomeKind
from app.services import payments as payments_service
from app.services.notifications import deliver_outcome
from app.services.qris import PaymentProvider
from app.services.telegram import TelegramBot
from app.storage.base import KeyValueStore

router = APIRouter()

# Push callbacks only notify the user when something actually changed.
NOTIFY_ON_CALLBACK = (OutcomeKind.FULFILLED, OutcomeKind.EXPIRED, OutcomeKind.ERROR)


@router.post("/callback")
async def qris_callback(
    request: Request,
    x_callback_signature: str = Header(..., alias="X-Callback-Signature"),
    store: KeyValueStore = Depends(get_kv_store),
    provider: PaymentProvider = Depends(get_payment_provider),
    bot: TelegramBot = Depends(get_telegram_bot),
):
    """QRIS provider callback: verify signature, then confirm through the same path as the Check button."""
    secret = get_settings().qris_callback_secret
    if not secret:
        raise BadRequestError("Callback secret not configured")
    body = await request.body()
    if not verify_callback_signature(body, x_callback_signature, secret):
        raise BadRequestError("Invalid signature")
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        raise BadRequestError("Invalid JSON body")
    if not isinstance(payload, dict):
        raise BadRequestError("Invalid JSON body")

    outcome = await payments_service.on_provider_callback(store, provider, payload)
    if outcome is not None and outcome.kind in NOTIFY_ON_CALLBACK and outcome.payment is not None:
        await deliver_outcome(bot, store, outcome.payment.user_id, outcome)
    return {"status": "ok", "outcome": outcome.kind.value if outcome else None}
