"""Shared fixtures: in-memory store, mocked Telegram provider, settlement engine."""

import os

os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:TEST-TOKEN")

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from api.services.memory_store import InMemoryMarketStore
from api.services.notification_service import TelegramNotificationService
from api.services.settlement_engine import Gift, MessagingProvider, SettlementEngine, User

SELLER_ID = "100"
BUYER_ID = "200"
OTHER_BUYER_ID = "300"


@pytest.fixture
def provider():
    """Mock Telegram provider; every call succeeds."""
    mock = AsyncMock(spec=MessagingProvider)
    mock.send_invoice.return_value = True
    mock.send_message.return_value = {"message_id": 1}
    mock.answer_pre_checkout_query.return_value = True
    return mock


@pytest_asyncio.fixture
async def store():
    """Store with a seller owning g1 (10 stars, listed) and g2 (unlisted)."""
    store = InMemoryMarketStore()
    await store.upsert_user(User(id=SELLER_ID, display_name="seller"))
    await store.upsert_user(User(id=BUYER_ID, display_name="buyer"))
    await store.create_gift(Gift(
        id="g1", owner_id=SELLER_ID, name="Teddy Bear", description="Soft", price_stars=10, for_sale=True,
    ))
    await store.create_gift(Gift(
        id="g2", owner_id=SELLER_ID, name="Rose", price_stars=5,
    ))
    return store


@pytest.fixture
def engine(store, provider):
    return SettlementEngine(
        store=store,
        provider=provider,
        notification_service=TelegramNotificationService(provider),
        provider_token="provider-token",
        currency="RUB",
    )
