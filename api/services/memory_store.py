"""
In-process market store.

Holds users, gifts and purchases in dicts. Each gift has its own
asyncio.Lock, so settlements of different gifts never wait on each other
while concurrent confirmations of the same gift are serialized.
Used for local development (STORAGE_BACKEND=memory) and tests.
"""

import asyncio
import copy
import logging
from typing import Dict, List, Optional

from api.services.pricing_service import stars_to_currency
from api.services.settlement_engine import (
    Gift,
    MarketStore,
    Purchase,
    StorageError,
    User,
    validate_id,
)

logger = logging.getLogger(__name__)


class InMemoryMarketStore(MarketStore):
    """MarketStore backed by process memory."""

    def __init__(self):
        self._gifts: Dict[str, Gift] = {}
        self._users: Dict[str, User] = {}
        self._purchases: List[Purchase] = []
        self._gift_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, gift_id: str) -> asyncio.Lock:
        lock = self._gift_locks.get(gift_id)
        if lock is None:
            lock = self._gift_locks[gift_id] = asyncio.Lock()
        return lock

    def _ensure_user(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            user = self._users[user_id] = User(id=user_id)
        return user

    # Gifts

    async def get_gift(self, gift_id: str) -> Optional[Gift]:
        gift = self._gifts.get(gift_id)
        return copy.deepcopy(gift) if gift else None

    async def create_gift(self, gift: Gift) -> Gift:
        validate_id(gift.id, "gift id")
        async with self._lock_for(gift.id):
            if gift.id in self._gifts:
                raise StorageError(f"Gift {gift.id} already exists")

            stored = copy.deepcopy(gift)
            if stored.sold:
                stored.for_sale = False
            self._gifts[stored.id] = stored
            self._ensure_user(stored.owner_id).owned_gift_ids.add(stored.id)
            return copy.deepcopy(stored)

    async def upsert_gift(self, gift: Gift) -> Gift:
        validate_id(gift.id, "gift id")
        async with self._lock_for(gift.id):
            stored = copy.deepcopy(gift)
            existing = self._gifts.get(gift.id)
            if existing is not None and existing.sold:
                stored.sold = True
            if stored.sold:
                stored.for_sale = False
            self._gifts[stored.id] = stored
            return copy.deepcopy(stored)

    async def list_gifts_for_sale(self) -> List[Gift]:
        return [copy.deepcopy(g) for g in self._gifts.values() if g.is_available]

    async def list_gifts_owned_by(self, user_id: str) -> List[Gift]:
        user = self._users.get(user_id)
        if user is None:
            return []
        return [
            copy.deepcopy(self._gifts[gift_id])
            for gift_id in sorted(user.owned_gift_ids)
            if gift_id in self._gifts
        ]

    # Users

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def upsert_user(self, user: User) -> User:
        stored = self._ensure_user(user.id)
        stored.display_name = user.display_name
        stored.avatar_url = user.avatar_url
        return copy.deepcopy(stored)

    async def credit_user(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValueError("Credit amount cannot be negative")
        user = self._ensure_user(user_id)
        user.star_balance += amount
        return user.star_balance

    # Purchases

    async def append_purchase(self, purchase: Purchase) -> Purchase:
        if any(p.gift_id == purchase.gift_id for p in self._purchases):
            raise StorageError(f"Purchase for gift {purchase.gift_id} already recorded")
        self._purchases.append(purchase)
        return copy.deepcopy(purchase)

    async def list_purchases(self, gift_id: Optional[str] = None) -> List[Purchase]:
        return [
            copy.deepcopy(p) for p in self._purchases
            if gift_id is None or p.gift_id == gift_id
        ]

    # Settlement

    async def settle_sale(
        self,
        gift_id: str,
        buyer_id: str,
        telegram_payment_charge_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        async with self._lock_for(gift_id):
            gift = self._gifts.get(gift_id)
            if gift is None or gift.sold:
                return None

            purchase = Purchase(
                gift_id=gift.id,
                buyer_id=buyer_id,
                seller_id=gift.owner_id,
                amount_in_currency=stars_to_currency(gift.price_stars),
                price_stars=gift.price_stars,
                telegram_payment_charge_id=telegram_payment_charge_id,
            )

            previous_state = (gift.for_sale, gift.sold)
            appended = credited = False
            gift.sold = True
            gift.for_sale = False

            try:
                await self.append_purchase(purchase)
                appended = True
                await self.credit_user(gift.owner_id, gift.price_stars)
                credited = True
            except Exception as e:
                # Undo everything applied so far; nothing of the sale survives
                gift.for_sale, gift.sold = previous_state
                if appended:
                    self._purchases.remove(purchase)
                if credited:
                    self._users[gift.owner_id].star_balance -= gift.price_stars
                logger.error(f"Settlement of gift {gift_id} rolled back: {e}")
                if isinstance(e, StorageError):
                    raise
                raise StorageError(f"Settlement of gift {gift_id} failed: {e}") from e

            self._ensure_user(gift.owner_id).owned_gift_ids.discard(gift.id)
            self._ensure_user(buyer_id).owned_gift_ids.add(gift.id)
            return copy.deepcopy(purchase)
