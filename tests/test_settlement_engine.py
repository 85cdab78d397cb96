"""Tests for settlement_engine.py - invoicing and exactly-once settlement."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from api.services.invoice_holds import InvoiceHoldService
from api.services.memory_store import InMemoryMarketStore
from api.services.notification_service import TelegramNotificationService
from api.services.settlement_engine import (
    Gift,
    GiftUnavailableError,
    PaymentConfirmation,
    PreCheckoutQuery,
    ProviderError,
    SettlementEngine,
    SettlementOutcome,
    StorageError,
)
from api.services.telegram_client import TelegramBotClient
from conftest import BUYER_ID, OTHER_BUYER_ID, SELLER_ID


def confirmation(payload="g1:200", **kwargs) -> PaymentConfirmation:
    kwargs.setdefault("chat_id", BUYER_ID)
    kwargs.setdefault("currency", "RUB")
    kwargs.setdefault("total_amount", 1560)
    kwargs.setdefault("telegram_payment_charge_id", "tg-charge-1")
    return PaymentConfirmation(invoice_payload=payload, **kwargs)


async def assert_invariants(store):
    """sold ⇒ not for_sale, and at most one purchase per gift."""
    for gift_id in ("g1", "g2"):
        gift = await store.get_gift(gift_id)
        if gift.sold:
            assert gift.for_sale is False
        assert len(await store.list_purchases(gift_id)) <= 1


class TestIssuePurchaseInvoice:
    
    @pytest.mark.asyncio
    async def test_sends_invoice(self, engine, provider, store):
        """Scenario: g1 at 10 stars → payload "g1:200", 1560 minor units."""
        result = await engine.issue_purchase_invoice(BUYER_ID, "g1")
        
        assert result.payload == "g1:200"
        assert result.amount == Decimal("15.60")
        assert result.amount_minor == 1560
        assert result.provider_response is True
        
        provider.send_invoice.assert_awaited_once_with(
            chat_id=BUYER_ID,
            title="Teddy Bear",
            description="Soft",
            payload="g1:200",
            provider_token="provider-token",
            currency="RUB",
            prices=[{"label": "Teddy Bear", "amount": 1560}],
        )
    
    @pytest.mark.asyncio
    async def test_does_not_change_gift_state(self, engine, store):
        await engine.issue_purchase_invoice(BUYER_ID, "g1")
        await engine.issue_purchase_invoice(OTHER_BUYER_ID, "g1")
        
        gift = await store.get_gift("g1")
        assert gift.for_sale is True and gift.sold is False
        assert await store.list_purchases() == []
    
    @pytest.mark.asyncio
    async def test_unlisted_gift_unavailable(self, engine, provider):
        with pytest.raises(GiftUnavailableError):
            await engine.issue_purchase_invoice(BUYER_ID, "g2")
        provider.send_invoice.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_unknown_gift_unavailable(self, engine):
        with pytest.raises(GiftUnavailableError):
            await engine.issue_purchase_invoice(BUYER_ID, "nope")
    
    @pytest.mark.asyncio
    async def test_sold_gift_unavailable(self, engine):
        await engine.handle_payment_confirmation(confirmation())
        with pytest.raises(GiftUnavailableError):
            await engine.issue_purchase_invoice(OTHER_BUYER_ID, "g1")
    
    @pytest.mark.asyncio
    async def test_owner_cannot_buy_own_gift(self, engine):
        with pytest.raises(GiftUnavailableError):
            await engine.issue_purchase_invoice(SELLER_ID, "g1")
    
    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, engine, provider):
        provider.send_invoice.side_effect = ProviderError("telegram", "400", "chat not found")
        with pytest.raises(ProviderError):
            await engine.issue_purchase_invoice(BUYER_ID, "g1")
    
    @pytest.mark.asyncio
    async def test_description_falls_back_to_name(self, engine, provider, store):
        await store.create_gift(Gift(id="g3", owner_id=SELLER_ID, name="Cake", price_stars=1, for_sale=True))
        await engine.issue_purchase_invoice(BUYER_ID, "g3")
        assert provider.send_invoice.await_args.kwargs["description"] == "Cake"


class TestHandlePaymentConfirmation:
    
    @pytest.mark.asyncio
    async def test_settles_sale(self, engine, store):
        result = await engine.handle_payment_confirmation(confirmation())
        
        assert result.outcome == SettlementOutcome.SETTLED
        gift = await store.get_gift("g1")
        assert gift.sold is True and gift.for_sale is False
        assert (await store.get_user(SELLER_ID)).star_balance == 10
        
        purchases = await store.list_purchases("g1")
        assert len(purchases) == 1
        assert purchases[0].buyer_id == BUYER_ID
        assert purchases[0].seller_id == SELLER_ID
        assert purchases[0].amount_in_currency == Decimal("15.60")
        assert purchases[0].telegram_payment_charge_id == "tg-charge-1"
        await assert_invariants(store)
    
    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, engine, store, provider):
        await engine.handle_payment_confirmation(confirmation())
        result = await engine.handle_payment_confirmation(confirmation())
        
        assert result.outcome == SettlementOutcome.DUPLICATE
        assert (await store.get_user(SELLER_ID)).star_balance == 10
        assert len(await store.list_purchases("g1")) == 1
        # Only the first delivery notified buyer and seller
        assert provider.send_message.await_count == 2
        await assert_invariants(store)
    
    @pytest.mark.asyncio
    async def test_already_sold_gift(self, engine, store):
        """Confirmation for a sold gift from another buyer: no credit, no record."""
        await engine.handle_payment_confirmation(confirmation())
        result = await engine.handle_payment_confirmation(
            confirmation("g1:300", chat_id=OTHER_BUYER_ID, telegram_payment_charge_id="tg-charge-2")
        )
        
        assert result.outcome == SettlementOutcome.DUPLICATE
        assert (await store.get_user(SELLER_ID)).star_balance == 10
        purchases = await store.list_purchases("g1")
        assert [p.buyer_id for p in purchases] == [BUYER_ID]
    
    @pytest.mark.asyncio
    async def test_malformed_payload(self, engine, store, provider):
        """Missing colon: acknowledged, nothing changes."""
        result = await engine.handle_payment_confirmation(confirmation("g1200"))
        
        assert result.outcome == SettlementOutcome.INVALID_PAYLOAD
        assert (await store.get_gift("g1")).sold is False
        assert await store.list_purchases() == []
        provider.send_message.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_unknown_gift(self, engine, store):
        result = await engine.handle_payment_confirmation(confirmation("ghost:200"))
        
        assert result.outcome == SettlementOutcome.UNKNOWN_GIFT
        assert await store.list_purchases() == []
    
    @pytest.mark.asyncio
    async def test_notifies_buyer_and_seller(self, engine, provider):
        await engine.handle_payment_confirmation(confirmation())
        
        recipients = sorted(call.args[0] for call in provider.send_message.await_args_list)
        assert recipients == [SELLER_ID, BUYER_ID]
    
    @pytest.mark.asyncio
    async def test_notification_failure_is_not_fatal(self, engine, provider, store):
        provider.send_message.side_effect = ProviderError("telegram", "403", "bot was blocked by the user")
        
        result = await engine.handle_payment_confirmation(confirmation())
        
        assert result.outcome == SettlementOutcome.SETTLED
        assert (await store.get_gift("g1")).sold is True
        assert (await store.get_user(SELLER_ID)).star_balance == 10
        # Not retried
        assert provider.send_message.await_count == 2
    
    @pytest.mark.asyncio
    async def test_failed_bot_notifications_are_sent_once(self, store):
        """Bot API down after payment: sale settles, each notification tried once."""
        calls = []
        
        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(502, text="Bad Gateway")
        
        client = TelegramBotClient("123:ABC")
        client._backoff = AsyncMock()
        client._client = httpx.AsyncClient(
            base_url="https://api.telegram.org/bot123:ABC",
            transport=httpx.MockTransport(handler),
        )
        engine = SettlementEngine(store, client, TelegramNotificationService(client))
        
        result = await engine.handle_payment_confirmation(confirmation())
        
        assert result.outcome == SettlementOutcome.SETTLED
        assert calls == ["/bot123:ABC/sendMessage"] * 2
        client._backoff.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_one_notification_failing_does_not_block_other(self, engine, provider):
        provider.send_message.side_effect = [asyncio.TimeoutError(), {"message_id": 2}]
        
        result = await engine.handle_payment_confirmation(confirmation())
        
        assert result.outcome == SettlementOutcome.SETTLED
        assert provider.send_message.await_count == 2
    
    @pytest.mark.asyncio
    async def test_storage_failure_propagates_then_redelivery_settles(self, provider):
        """A failed settlement leaves no trace; the redelivered confirmation succeeds."""
        
        class FlakyStore(InMemoryMarketStore):
            fail_next = True
            
            async def credit_user(self, user_id, amount):
                if self.fail_next:
                    self.fail_next = False
                    raise StorageError("connection reset")
                return await super().credit_user(user_id, amount)
        
        store = FlakyStore()
        await store.create_gift(Gift(id="g1", owner_id=SELLER_ID, name="Bear", price_stars=10, for_sale=True))
        engine = SettlementEngine(store, provider, AsyncMock(), currency="RUB")
        
        with pytest.raises(StorageError):
            await engine.handle_payment_confirmation(confirmation())
        
        assert (await store.get_gift("g1")).sold is False
        assert await store.list_purchases() == []
        
        result = await engine.handle_payment_confirmation(confirmation())
        assert result.outcome == SettlementOutcome.SETTLED
        assert (await store.get_user(SELLER_ID)).star_balance == 10
    
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_confirmations(self, provider):
        """Two simultaneous confirmations: one sold transition, one credit."""
        
        class SlowStore(InMemoryMarketStore):
            async def append_purchase(self, purchase):
                await asyncio.sleep(0.01)
                return await super().append_purchase(purchase)
        
        store = SlowStore()
        await store.create_gift(Gift(id="g1", owner_id=SELLER_ID, name="Bear", price_stars=10, for_sale=True))
        notifications = AsyncMock()
        engine = SettlementEngine(store, provider, notifications, currency="RUB")
        
        results = await asyncio.gather(
            engine.handle_payment_confirmation(confirmation()),
            engine.handle_payment_confirmation(confirmation()),
        )
        
        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["duplicate", "settled"]
        assert (await store.get_user(SELLER_ID)).star_balance == 10
        assert len(await store.list_purchases("g1")) == 1
        notifications.notify_purchase_delivered.assert_awaited_once()
        notifications.notify_gift_sold.assert_awaited_once()
    
    @pytest.mark.asyncio
    async def test_amount_mismatch_still_settles(self, engine, store):
        result = await engine.handle_payment_confirmation(confirmation(total_amount=999))
        assert result.outcome == SettlementOutcome.SETTLED


class TestPreCheckout:
    
    @pytest.mark.asyncio
    async def test_approves_available_gift(self, engine, provider):
        ok = await engine.answer_pre_checkout(PreCheckoutQuery(id="q1", from_id=BUYER_ID, invoice_payload="g1:200"))
        
        assert ok is True
        provider.answer_pre_checkout_query.assert_awaited_once_with("q1", True, error_message=None)
    
    @pytest.mark.asyncio
    async def test_rejects_sold_gift(self, engine, provider):
        await engine.handle_payment_confirmation(confirmation())
        
        ok = await engine.answer_pre_checkout(PreCheckoutQuery(id="q2", from_id=OTHER_BUYER_ID, invoice_payload="g1:300"))
        
        assert ok is False
        args = provider.answer_pre_checkout_query.await_args
        assert args.args == ("q2", False)
        assert args.kwargs["error_message"]
    
    @pytest.mark.asyncio
    async def test_rejects_malformed_payload(self, engine, provider):
        ok = await engine.answer_pre_checkout(PreCheckoutQuery(id="q3", from_id=BUYER_ID, invoice_payload="junk"))
        assert ok is False
    
    @pytest.mark.asyncio
    async def test_provider_error_is_logged(self, engine, provider):
        provider.answer_pre_checkout_query.side_effect = ProviderError("telegram", "400", "query is too old")
        ok = await engine.answer_pre_checkout(PreCheckoutQuery(id="q4", from_id=BUYER_ID, invoice_payload="g1:200"))
        assert ok is True


class TestInvoiceHolds:
    """Engine behaviour with Redis-backed invoice holds enabled."""
    
    @pytest.fixture
    def holds(self):
        holds = AsyncMock(spec=InvoiceHoldService)
        holds.acquire.return_value = True
        return holds
    
    @pytest.fixture
    def held_engine(self, store, provider, holds):
        return SettlementEngine(store, provider, AsyncMock(), currency="RUB", holds=holds)
    
    @pytest.mark.asyncio
    async def test_hold_taken_before_invoice(self, held_engine, holds):
        await held_engine.issue_purchase_invoice(BUYER_ID, "g1")
        holds.acquire.assert_awaited_once_with("g1", BUYER_ID)
    
    @pytest.mark.asyncio
    async def test_held_gift_rejected(self, held_engine, holds, provider):
        holds.acquire.return_value = False
        with pytest.raises(GiftUnavailableError):
            await held_engine.issue_purchase_invoice(OTHER_BUYER_ID, "g1")
        provider.send_invoice.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_hold_released_when_invoice_fails(self, held_engine, holds, provider):
        provider.send_invoice.side_effect = ProviderError("telegram", "400", "bad request")
        with pytest.raises(ProviderError):
            await held_engine.issue_purchase_invoice(BUYER_ID, "g1")
        holds.release.assert_awaited_once_with("g1")
    
    @pytest.mark.asyncio
    async def test_hold_released_after_settlement(self, held_engine, holds):
        await held_engine.handle_payment_confirmation(confirmation())
        holds.release.assert_awaited_once_with("g1")
