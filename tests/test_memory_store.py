"""Tests for memory_store.py - In-process MarketStore."""

import asyncio
from decimal import Decimal

import pytest

from api.services.memory_store import InMemoryMarketStore
from api.services.settlement_engine import Gift, InvalidPayloadError, Purchase, StorageError, User
from conftest import BUYER_ID, SELLER_ID


class TestGifts:
    
    @pytest.mark.asyncio
    async def test_create_adds_to_owner_collection(self, store):
        owner = await store.get_user(SELLER_ID)
        assert owner.owned_gift_ids == {"g1", "g2"}
        assert [g.id for g in await store.list_gifts_owned_by(SELLER_ID)] == ["g1", "g2"]
    
    @pytest.mark.asyncio
    async def test_create_rejects_duplicate_id(self, store):
        with pytest.raises(StorageError):
            await store.create_gift(Gift(id="g1", owner_id=SELLER_ID, name="Again"))
    
    @pytest.mark.asyncio
    async def test_create_rejects_separator_in_id(self, store):
        with pytest.raises(InvalidPayloadError):
            await store.create_gift(Gift(id="bad:id", owner_id=SELLER_ID, name="Bad"))
    
    @pytest.mark.asyncio
    async def test_upsert_rejects_separator_in_id(self, store):
        with pytest.raises(InvalidPayloadError):
            await store.upsert_gift(Gift(id="bad:id", owner_id=SELLER_ID, name="Bad"))
        assert await store.get_gift("bad:id") is None
    
    @pytest.mark.asyncio
    async def test_list_for_sale(self, store):
        assert [g.id for g in await store.list_gifts_for_sale()] == ["g1"]
    
    @pytest.mark.asyncio
    async def test_returned_gifts_are_copies(self, store):
        gift = await store.get_gift("g1")
        gift.sold = True
        assert (await store.get_gift("g1")).sold is False
    
    @pytest.mark.asyncio
    async def test_upsert_never_resets_sold(self, store):
        await store.settle_sale("g1", BUYER_ID)
        
        stored = await store.upsert_gift(Gift(
            id="g1", owner_id=SELLER_ID, name="Teddy Bear", price_stars=10, for_sale=True, sold=False,
        ))
        
        assert stored.sold is True
        assert stored.for_sale is False


class TestUsers:
    
    @pytest.mark.asyncio
    async def test_upsert_keeps_balance(self, store):
        await store.credit_user(SELLER_ID, 7)
        await store.upsert_user(User(id=SELLER_ID, display_name="renamed", star_balance=0))
        
        user = await store.get_user(SELLER_ID)
        assert user.display_name == "renamed"
        assert user.star_balance == 7
    
    @pytest.mark.asyncio
    async def test_credit_creates_missing_user(self, store):
        assert await store.credit_user("999", 3) == 3
        assert (await store.get_user("999")).star_balance == 3
    
    @pytest.mark.asyncio
    async def test_negative_credit_rejected(self, store):
        with pytest.raises(ValueError):
            await store.credit_user(SELLER_ID, -1)


class TestSettleSale:
    
    @pytest.mark.asyncio
    async def test_settles_once(self, store):
        purchase = await store.settle_sale("g1", BUYER_ID, telegram_payment_charge_id="tg-1")
        
        assert purchase.seller_id == SELLER_ID
        assert purchase.amount_in_currency == Decimal("15.60")
        assert purchase.price_stars == 10
        
        gift = await store.get_gift("g1")
        assert gift.sold is True and gift.for_sale is False
        assert (await store.get_user(SELLER_ID)).star_balance == 10
        assert "g1" in (await store.get_user(BUYER_ID)).owned_gift_ids
        assert "g1" not in (await store.get_user(SELLER_ID)).owned_gift_ids
        
        assert await store.settle_sale("g1", BUYER_ID) is None
        assert len(await store.list_purchases("g1")) == 1
        assert (await store.get_user(SELLER_ID)).star_balance == 10
    
    @pytest.mark.asyncio
    async def test_unknown_gift(self, store):
        assert await store.settle_sale("missing", BUYER_ID) is None
    
    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self):
        """Credit failure leaves no sold flag and no purchase behind."""
        
        class FailingCreditStore(InMemoryMarketStore):
            async def credit_user(self, user_id, amount):
                raise ConnectionError("balance backend down")
        
        store = FailingCreditStore()
        await store.create_gift(Gift(id="g1", owner_id=SELLER_ID, name="Bear", price_stars=10, for_sale=True))
        
        with pytest.raises(StorageError):
            await store.settle_sale("g1", BUYER_ID)
        
        gift = await store.get_gift("g1")
        assert gift.sold is False and gift.for_sale is True
        assert await store.list_purchases() == []
        assert (await store.get_user(SELLER_ID)).star_balance == 0
    
    @pytest.mark.asyncio
    async def test_concurrent_settlements_serialize(self):
        """Two racing settlements of one gift: exactly one wins."""
        
        class SlowStore(InMemoryMarketStore):
            async def append_purchase(self, purchase: Purchase) -> Purchase:
                await asyncio.sleep(0.01)
                return await super().append_purchase(purchase)
        
        store = SlowStore()
        await store.create_gift(Gift(id="g1", owner_id=SELLER_ID, name="Bear", price_stars=10, for_sale=True))
        
        results = await asyncio.gather(
            store.settle_sale("g1", BUYER_ID),
            store.settle_sale("g1", "300"),
        )
        
        assert sum(r is not None for r in results) == 1
        assert len(await store.list_purchases("g1")) == 1
        assert (await store.get_user(SELLER_ID)).star_balance == 10
