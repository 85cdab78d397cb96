"""
Invoice Holds - Optional short-lived reservation of a gift at invoice time.

While a hold is active, only the holding buyer can get another invoice for
the gift. Holds only cut down on wasted invoices; settlement never looks at
them, so an expired or lost hold cannot cause a double sale.

Redis keys: gift_hold:{gift_id} → buyer_id, expiring after ttl seconds.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class InvoiceHoldService:
    """
    Usage:
        holds = InvoiceHoldService(redis, ttl_seconds=900)
        if await holds.acquire("gift-1", "42"):
            ...send invoice...
    """

    def __init__(self, redis: Optional[aioredis.Redis], ttl_seconds: int = 0):
        self._redis = redis
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._redis is not None and self.ttl_seconds > 0

    @staticmethod
    def _key(gift_id: str) -> str:
        return f"gift_hold:{gift_id}"

    async def acquire(self, gift_id: str, buyer_id: str) -> bool:
        """Take or refresh the hold. False when another buyer holds the gift."""
        if not self.enabled:
            return True

        key = self._key(gift_id)
        try:
            if await self._redis.set(key, buyer_id, nx=True, ex=self.ttl_seconds):
                return True

            holder = await self._redis.get(key)
            if holder is None:
                # Expired between SET and GET
                return bool(await self._redis.set(key, buyer_id, nx=True, ex=self.ttl_seconds))
            if isinstance(holder, bytes):
                holder = holder.decode()
            if holder == buyer_id:
                await self._redis.expire(key, self.ttl_seconds)
                return True

            logger.info(f"Gift {gift_id} held by buyer {holder}, rejecting {buyer_id}")
            return False
        except RedisError as e:
            # Degraded mode: without Redis, settlement alone decides the winner
            logger.warning(f"Invoice hold unavailable for gift {gift_id}: {e}")
            return True

    async def release(self, gift_id: str) -> None:
        if not self.enabled:
            return
        try:
            await self._redis.delete(self._key(gift_id))
        except RedisError as e:
            logger.warning(f"Failed to release hold for gift {gift_id}: {e}")

