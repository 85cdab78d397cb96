"""API Dependencies - Dependency injection for FastAPI."""

from typing import Optional

import redis.asyncio as aioredis
from fastapi import Cookie, Header, HTTPException

from config.settings import (
    INVOICE_CURRENCY,
    INVOICE_HOLD_SECONDS,
    PAYMENT_PROVIDER_TOKEN,
    REDIS_URL,
    STORAGE_BACKEND,
    TELEGRAM_API_URL,
    TELEGRAM_BOT_TOKEN,
    TELEGRAM_TIMEOUT_SECONDS,
)
from api.services.auth_service import AuthService
from api.services.invoice_holds import InvoiceHoldService
from api.services.notification_service import TelegramNotificationService
from api.services.settlement_engine import MarketStore, SettlementEngine
from api.services.telegram_client import TelegramBotClient


# Redis client singleton
_redis_client = None


def get_redis_client() -> aioredis.Redis:
    """Get async Redis client singleton."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    return _redis_client


# Store singleton
_market_store: Optional[MarketStore] = None


def get_market_store() -> MarketStore:
    """
    Get or create the MarketStore singleton.

    STORAGE_BACKEND=memory keeps everything in process (dev only),
    anything else uses PostgreSQL.
    """
    global _market_store
    if _market_store is None:
        if STORAGE_BACKEND == "memory":
            from api.services.memory_store import InMemoryMarketStore
            _market_store = InMemoryMarketStore()
        else:
            from api.services.postgres_store import PostgresMarketStore
            _market_store = PostgresMarketStore()
    return _market_store


# Telegram client singleton
_telegram_client: Optional[TelegramBotClient] = None


def get_telegram_client() -> TelegramBotClient:
    global _telegram_client
    if _telegram_client is None:
        _telegram_client = TelegramBotClient(
            bot_token=TELEGRAM_BOT_TOKEN or "",
            base_url=TELEGRAM_API_URL,
            timeout=TELEGRAM_TIMEOUT_SECONDS,
        )
    return _telegram_client


# Settlement engine singleton
_settlement_engine: Optional[SettlementEngine] = None


def get_settlement_engine() -> SettlementEngine:
    """
    Get or create SettlementEngine singleton.

    Initializes:
    - MarketStore for gifts, users and purchases
    - TelegramBotClient for invoices and messages
    - TelegramNotificationService for buyer/seller notifications
    - InvoiceHoldService when INVOICE_HOLD_SECONDS > 0
    """
    global _settlement_engine

    if _settlement_engine is None:
        client = get_telegram_client()
        holds = None
        if INVOICE_HOLD_SECONDS > 0:
            holds = InvoiceHoldService(get_redis_client(), ttl_seconds=INVOICE_HOLD_SECONDS)

        _settlement_engine = SettlementEngine(
            store=get_market_store(),
            provider=client,
            notification_service=TelegramNotificationService(client),
            provider_token=PAYMENT_PROVIDER_TOKEN,
            currency=INVOICE_CURRENCY,
            holds=holds,
        )

    return _settlement_engine


async def get_current_user_id(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> str:
    """Dependency resolving the Telegram user id from a bearer token or cookie."""
    token = None
    if authorization:
        if not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Invalid authorization header format")
        token = authorization[7:]  # Remove "Bearer " prefix
    elif access_token:
        token = access_token

    if not token:
        raise HTTPException(status_code=401, detail="Missing authorization")

    user_id = AuthService.verify_access_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return user_id
