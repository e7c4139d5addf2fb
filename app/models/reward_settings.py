from typing import Literal

from pydantic import BaseModel, Field


class DepositBonus(BaseModel):
    enabled: bool = True
    percent: float = Field(default=5, ge=0)
    min_deposit: int = 10000  # floor: smaller deposits earn no bonus
    max_bonus: int = 50000


class PurchaseCashback(BaseModel):
    enabled: bool = True
    percent: float = Field(default=2, ge=0)
    min_purchase: int = 20000


class AchievementRule(BaseModel):
    id: str
    title: str
    metric: Literal["purchase_count", "total_spent"]
    threshold: int
    reward: int = Field(ge=0)


def _default_rules() -> list[AchievementRule]:
    return [
        AchievementRule(id="firstPurchase", title="First Purchase", metric="purchase_count", threshold=1, reward=2000),
        AchievementRule(id="fivePurchases", title="Loyal Customer", metric="purchase_count", threshold=5, reward=5000),
        AchievementRule(id="tenPurchases", title="Premium Customer", metric="purchase_count", threshold=10, reward=10000),
        AchievementRule(id="bigSpender", title="Big Spender", metric="total_spent", threshold=100000, reward=15000),
    ]


class AchievementRewards(BaseModel):
    enabled: bool = True
    rules: list[AchievementRule] = Field(default_factory=_default_rules)  # evaluated in order


class RewardSettings(BaseModel):
    """Operator-tunable rewards; stored in the key-value store, loaded per call."""
    enabled: bool = True
    deposit_bonus: DepositBonus = Field(default_factory=DepositBonus)
    purchase_cashback: PurchaseCashback = Field(default_factory=PurchaseCashback)
    achievements: AchievementRewards = Field(default_factory=AchievementRewards)
