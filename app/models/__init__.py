from app.models.user import User
from app.models.product import CounterInventory, ListInventory, Product
from app.models.pending_payment import PaymentKind, PaymentStatus, PendingPayment
from app.models.transaction import Transaction, TransactionType
from app.models.reward_settings import RewardSettings
from app.models.outcome import ExpiredNotice, FulfillmentDetails, OutcomeKind, RenderableOutcome

__all__ = [
    "User",
    "Product",
    "ListInventory",
    "CounterInventory",
    "PendingPayment",
    "PaymentKind",
    "PaymentStatus",
    "Transaction",
    "TransactionType",
    "RewardSettings",
    "RenderableOutcome",
    "OutcomeKind",
    "FulfillmentDetails",
    "ExpiredNotice",
]
