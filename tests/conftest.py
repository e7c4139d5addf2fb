import asyncio
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory store and fixed secrets for tests
os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("TELEGRAM_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("QRIS_CALLBACK_SECRET", "test-callback-secret")
os.environ.setdefault("OPERATOR_CHAT_ID", "999")
os.environ.setdefault("OPERATOR_USER_IDS", "777")
os.environ.setdefault("PAYMENT_SURCHARGE_MAX", "0")

from app.core.config import get_settings  # noqa: E402
from app.core.exceptions import ProviderError  # noqa: E402
from app.services import inventory  # noqa: E402
from app.services.qris import Invoice, PaymentProvider, ProviderStatus  # noqa: E402
from app.services.telegram import TelegramBot  # noqa: E402
from app.storage.memory import MemoryStore  # noqa: E402

get_settings.cache_clear()


class FakeProvider(PaymentProvider):
    """Scripted QRIS provider: invoices get sequential ids, status defaults to not paid."""

    def __init__(self, fee: int = 0, expiry_minutes: int = 15) -> None:
        self.fee = fee
        self.expiry_minutes = expiry_minutes
        self.statuses: dict[str, ProviderStatus] = {}
        self.create_error: ProviderError | None = None
        self.check_error: ProviderError | None = None
        self.created: list[tuple[str, int, dict]] = []
        self.check_calls = 0
        self._seq = 0

    def mark_paid(self, payment_id: str) -> None:
        self.statuses[payment_id] = ProviderStatus.PAID

    async def create_invoice(self, amount: int, metadata: dict[str, Any] | None = None) -> Invoice:
        if self.create_error:
            raise self.create_error
        self._seq += 1
        payment_id = f"TRX{self._seq:04d}"
        self.created.append((payment_id, amount, metadata or {}))
        return Invoice(
            payment_id=payment_id,
            qr_image_url=f"https://qr.example/{payment_id}.png",
            total_due=amount + self.fee,
            fee_amount=self.fee,
            expiry_minutes=self.expiry_minutes,
        )

    async def check_status(self, payment_id: str) -> ProviderStatus:
        self.check_calls += 1
        await asyncio.sleep(0)  # let concurrent confirms interleave
        if self.check_error:
            raise self.check_error
        return self.statuses.get(payment_id, ProviderStatus.NOT_PAID)


class FakeBot(TelegramBot):
    """Records Bot API calls instead of sending them."""

    def __init__(self) -> None:
        super().__init__(token="test-token")
        self.calls: list[tuple[str, dict]] = []
        self._next_message_id = 100

    async def call(self, method: str, payload: dict[str, Any]) -> dict[str, Any] | None:
        self.calls.append((method, payload))
        if method in ("sendMessage", "sendPhoto"):
            self._next_message_id += 1
            return {"message_id": self._next_message_id, "chat": {"id": payload["chat_id"]}}
        return {}

    def sent(self, method: str) -> list[dict]:
        return [p for m, p in self.calls if m == method]


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def bot() -> FakeBot:
    return FakeBot()


@pytest_asyncio.fixture
async def netflix(store):
    """List-backed product with three credentials."""
    return await inventory.save_product(store, "netflix", "Netflix Premium", 25000, items=["acc-1", "acc-2", "acc-3"])


@pytest_asyncio.fixture
async def spotify(store):
    """Counter-backed product delivered by an operator."""
    return await inventory.save_product(store, "spotify", "Spotify Family", 15000, stock=5)


@pytest_asyncio.fixture
async def client(store, provider, bot) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_kv_store, get_payment_provider, get_telegram_bot
    from app.main import app

    app.dependency_overrides[get_kv_store] = lambda: store
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_telegram_bot] = lambda: bot
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
