from datetime import datetime, timezone

from pydantic import BaseModel, Field


class User(BaseModel):
    """Telegram user with balance projection; history lives in the transaction log."""
    id: str
    username: str | None = None
    balance: int = Field(default=0, ge=0)
    purchase_count: int = 0
    total_spent: int = 0
    achievements: list[str] = Field(default_factory=list)  # achievement ids, unlock order
    joined_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0
