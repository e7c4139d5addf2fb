from app.core.logging import get_logger
from app.models.user import User
from app.services import statistics
from app.storage import keys
from app.storage.base import KeyValueStore

log = get_logger(__name__)


async def get_or_create_user(store: KeyValueStore, user_id: str, username: str | None = None) -> tuple[User, bool]:
    """Return (user, created). Registration happens on the user's first contact with the bot."""
    user = User(id=user_id, username=username)
    if await store.add(keys.user(user_id), user.model_dump(mode="json")):
        log.info("user_created", user_id=user_id, username=username)
        await statistics.record_event(store, statistics.USER_REGISTERED)
        return user, True
    doc = await store.get(keys.user(user_id))
    return User.model_validate(doc), False
