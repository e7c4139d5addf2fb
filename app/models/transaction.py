import secrets
import time
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    BONUS = "bonus"
    PURCHASE = "purchase"
    CASHBACK = "cashback"


def generate_transaction_id() -> str:
    return f"TX{int(time.time() * 1000)}{secrets.token_hex(3).upper()}"


class Transaction(BaseModel):
    """Ledger history entry. Append-only."""
    id: str = Field(default_factory=generate_transaction_id)
    user_id: str
    type: TransactionType
    amount: int
    product_label: str = ""
    reference: str | None = None  # payment id, achievement id
    balance_after: int | None = None  # None when the entry did not touch the balance
    status: str = "completed"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
