"""Deposit bonus, purchase cashback and achievement rewards."""

from app.core.logging import get_logger
from app.models.outcome import AchievementUnlock
from app.models.reward_settings import AchievementRule, RewardSettings
from app.models.transaction import TransactionType
from app.models.user import User
from app.services import ledger
from app.storage import keys
from app.storage.base import KeyValueStore

log = get_logger(__name__)


async def load_reward_settings(store: KeyValueStore) -> RewardSettings:
    doc = await store.get(keys.REWARD_SETTINGS)
    return RewardSettings.model_validate(doc) if doc else RewardSettings()


async def save_reward_settings(store: KeyValueStore, settings: RewardSettings) -> RewardSettings:
    await store.put(keys.REWARD_SETTINGS, settings.model_dump(mode="json"))
    return settings


def deposit_bonus(settings: RewardSettings, amount: int) -> int:
    rule = settings.deposit_bonus
    if not settings.enabled or not rule.enabled or amount < rule.min_deposit:
        return 0
    return min(int(amount * rule.percent // 100), rule.max_bonus)


def purchase_cashback(settings: RewardSettings, amount: int) -> int:
    rule = settings.purchase_cashback
    if not settings.enabled or not rule.enabled or amount < rule.min_purchase:
        return 0
    return int(amount * rule.percent // 100)


def newly_met(settings: RewardSettings, user: User) -> list[AchievementRule]:
    """Every rule the user satisfies but has not unlocked yet, in table order."""
    if not settings.enabled or not settings.achievements.enabled:
        return []
    met = []
    for rule in settings.achievements.rules:
        if rule.id in user.achievements:
            continue
        value = user.purchase_count if rule.metric == "purchase_count" else user.total_spent
        if value >= rule.threshold:
            met.append(rule)
    return met


async def evaluate_achievements(store: KeyValueStore, user_id: str, settings: RewardSettings) -> list[AchievementUnlock]:
    """
    Unlock all achievements the user's counters now satisfy. The unlock is recorded on
    the user atomically, so concurrent purchases cannot award the same achievement twice;
    each reward is a Bonus ledger entry.
    """
    unlocked: list[AchievementRule] = []

    def mutate(doc):
        user = User.model_validate(doc)
        rules = newly_met(settings, user)
        unlocked[:] = rules
        user.achievements.extend(r.id for r in rules)
        if rules:
            user.version += 1
        return user.model_dump(mode="json")

    if not await store.get(keys.user(user_id)):
        return []
    await store.update(keys.user(user_id), mutate)

    out = []
    for rule in unlocked:
        if rule.reward > 0:
            await ledger.credit(
                store,
                user_id,
                rule.reward,
                TransactionType.BONUS,
                product_label=f"Achievement: {rule.title}",
                reference=rule.id,
                idempotency_key=f"achievement:{user_id}:{rule.id}",
            )
        log.info("achievement_unlocked", user_id=user_id, achievement=rule.id, reward=rule.reward)
        out.append(AchievementUnlock(id=rule.id, title=rule.title, reward=rule.reward))
    return out
