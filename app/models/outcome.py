from enum import Enum

from pydantic import BaseModel, Field

from app.models.pending_payment import PaymentKind, PendingPayment


class OutcomeKind(str, Enum):
    CREATED = "created"
    ALREADY_PENDING = "already_pending"
    NOT_YET_PAID = "not_yet_paid"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ALREADY_PROCESSED = "already_processed"
    ERROR = "error"


class AchievementUnlock(BaseModel):
    id: str
    title: str
    reward: int


class FulfillmentDetails(BaseModel):
    payment_id: str | None  # None for balance purchases
    kind: PaymentKind
    amount: int
    credited: int = 0
    bonus: int = 0
    cashback: int = 0
    product_key: str | None = None
    product_title: str | None = None
    qty: int = 0
    items: list[str] = Field(default_factory=list)
    manual_delivery: bool = False  # counter-backed product: operator delivers
    achievements: list[AchievementUnlock] = Field(default_factory=list)
    balance_after: int | None = None


class RenderableOutcome(BaseModel):
    """What the presentation layer turns into chat messages."""
    kind: OutcomeKind
    payment: PendingPayment | None = None
    details: FulfillmentDetails | None = None
    reason: str | None = None  # error code for ERROR, cause for NOT_YET_PAID
    message: str | None = None
    retryable: bool = False
    operator_notice: str | None = None  # send to the operator chat when set


class ExpiredNotice(BaseModel):
    payment_id: str
    user_id: str
    kind: PaymentKind
    amount: int
    product_title: str | None = None
    message_id: int | None = None
