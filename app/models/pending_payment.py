from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field


class PaymentKind(str, Enum):
    DEPOSIT = "deposit"
    PURCHASE = "purchase"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.EXPIRED,
    PaymentStatus.CANCELLED,
    PaymentStatus.FAILED,
})


class PaymentStateError(Exception):
    """Attempted to move a payment out of a terminal status."""


class PendingPayment(BaseModel):
    """In-flight QRIS invoice, keyed by the provider's transaction id."""
    payment_id: str
    user_id: str
    kind: PaymentKind
    amount: int  # nominal: what gets credited / what the goods cost
    total_due: int  # what the user pays: nominal + surcharge + provider fee
    fee_amount: int = 0
    surcharge: int = 0
    product_key: str | None = None
    product_title: str | None = None
    qty: int = Field(default=1, ge=1)
    pay_url: str | None = None
    qr_image_url: str | None = None
    qr_string: str | None = None
    message_id: int | None = None  # Telegram message showing the invoice
    status: PaymentStatus = PaymentStatus.PENDING
    failure_reason: str | None = None
    expiry_minutes: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime | None = None
    version: int = 0

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(minutes=self.expiry_minutes)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return now - self.created_at > timedelta(minutes=self.expiry_minutes)

    def transition(self, status: PaymentStatus, now: datetime, reason: str | None = None) -> None:
        if self.is_terminal:
            raise PaymentStateError(f"{self.payment_id} is already {self.status.value}")
        self.status = status
        self.failure_reason = reason
        self.updated_at = now
        self.version += 1
