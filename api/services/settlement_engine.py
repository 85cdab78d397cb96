"""
Settlement Engine - Purchase invoicing and payment settlement for the gift market.

Flow:
    purchase request → issue_purchase_invoice (sendInvoice, no state change)
    → Telegram collects payment
    → successful_payment update → handle_payment_confirmation
      (atomic sold transition + purchase record + seller credit, exactly once)

Telegram delivers updates at least once, so confirmations are idempotent:
a redelivered confirmation finds the gift already sold and becomes a no-op.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
import asyncio
import logging
import secrets
import time
from typing import Optional, Any, List, Tuple

from api.services.metrics import track_invoice, track_settlement, track_notification_failure
from api.services.pricing_service import stars_to_currency, to_minor_units

logger = logging.getLogger(__name__)

PAYLOAD_SEPARATOR = ":"


# ============================================================================
# Enums
# ============================================================================

class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    DUPLICATE = "duplicate"
    UNKNOWN_GIFT = "unknown_gift"
    INVALID_PAYLOAD = "invalid_payload"


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class Gift:
    """A sellable virtual gift."""
    id: str
    owner_id: str
    name: str
    description: str = ""
    price_stars: int = 1
    for_sale: bool = False
    sold: bool = False

    @property
    def is_available(self) -> bool:
        return self.for_sale and not self.sold

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "stars": self.price_stars,
            "for_sale": self.for_sale,
            "sold": self.sold,
        }


@dataclass
class User:
    """Telegram user known to the marketplace."""
    id: str
    display_name: Optional[str] = None
    avatar_url: str = ""
    star_balance: int = 0
    owned_gift_ids: set = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.display_name,
            "avatar": self.avatar_url,
            "star_balance": self.star_balance,
            "owned_gift_ids": sorted(self.owned_gift_ids),
        }


@dataclass
class Purchase:
    """Append-only ledger entry, one per settled gift."""
    gift_id: str
    buyer_id: str
    seller_id: str
    amount_in_currency: Decimal
    price_stars: int
    telegram_payment_charge_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "gift_id": self.gift_id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "amount_rub": str(self.amount_in_currency),
            "stars": self.price_stars,
            "telegram_payment_charge_id": self.telegram_payment_charge_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PaymentConfirmation:
    """successful_payment message delivered through the bot webhook."""
    invoice_payload: str
    chat_id: Optional[str] = None
    currency: Optional[str] = None
    total_amount: Optional[int] = None
    telegram_payment_charge_id: Optional[str] = None
    provider_payment_charge_id: Optional[str] = None

    @classmethod
    def from_update(cls, update: dict) -> Optional["PaymentConfirmation"]:
        """Extract a confirmation from a Telegram update, None if it carries none."""
        message = update.get("message") or {}
        payment = message.get("successful_payment")
        if not isinstance(payment, dict):
            return None

        chat_id = (message.get("chat") or {}).get("id")
        payload = payment.get("invoice_payload")
        return cls(
            invoice_payload=payload if isinstance(payload, str) else "",
            chat_id=str(chat_id) if chat_id is not None else None,
            currency=payment.get("currency"),
            total_amount=payment.get("total_amount"),
            telegram_payment_charge_id=payment.get("telegram_payment_charge_id"),
            provider_payment_charge_id=payment.get("provider_payment_charge_id"),
        )


@dataclass
class PreCheckoutQuery:
    """pre_checkout_query that must be answered before Telegram charges the buyer."""
    id: str
    from_id: Optional[str]
    invoice_payload: str
    currency: Optional[str] = None
    total_amount: Optional[int] = None

    @classmethod
    def from_update(cls, update: dict) -> Optional["PreCheckoutQuery"]:
        query = update.get("pre_checkout_query")
        if not isinstance(query, dict) or not query.get("id"):
            return None

        from_id = (query.get("from") or {}).get("id")
        payload = query.get("invoice_payload")
        return cls(
            id=str(query["id"]),
            from_id=str(from_id) if from_id is not None else None,
            invoice_payload=payload if isinstance(payload, str) else "",
            currency=query.get("currency"),
            total_amount=query.get("total_amount"),
        )


@dataclass
class InvoiceResult:
    """Result of issuing a purchase invoice."""
    gift_id: str
    buyer_id: str
    payload: str
    amount: Decimal
    amount_minor: int
    currency: str
    provider_response: Any = None


@dataclass
class SettlementResult:
    """Result of handling one payment confirmation."""
    outcome: SettlementOutcome
    purchase: Optional[Purchase] = None


# ============================================================================
# Exceptions
# ============================================================================

class MarketError(Exception):
    """Base exception for marketplace errors."""
    code = "MARKET_ERROR"
    status_code = 400


class GiftUnavailableError(MarketError):
    """Gift does not exist, is not listed, or is already sold."""
    code = "GIFT_UNAVAILABLE"
    status_code = 400

    def __init__(self, gift_id: str, reason: str = "Gift not available"):
        self.gift_id = gift_id
        super().__init__(reason)


class InvalidPayloadError(MarketError):
    """Invoice payload cannot be built or parsed."""
    code = "INVALID_PAYLOAD"
    status_code = 400


class NotFoundError(MarketError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(MarketError):
    code = "FORBIDDEN"
    status_code = 403


class StorageError(MarketError):
    """Storage layer failed; nothing was committed."""
    code = "STORAGE_ERROR"
    status_code = 500


class ProviderError(MarketError):
    """Error from the Telegram Bot API."""
    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, provider: str, error_code: str, message: str):
        self.provider = provider
        self.error_code = error_code
        super().__init__(f"{provider} error [{error_code}]: {message}")


class NotificationError(MarketError):
    """Best-effort notification could not be delivered."""
    code = "NOTIFICATION_FAILED"
    status_code = 502


# ============================================================================
# Identifiers and invoice payload
# ============================================================================

def generate_gift_id() -> str:
    """Opaque gift id, free of the payload separator."""
    return f"gift-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def validate_id(value: str, kind: str = "id") -> str:
    """Reject ids that are empty or would make the invoice payload ambiguous."""
    if not isinstance(value, str) or not value:
        raise InvalidPayloadError(f"Empty {kind}")
    if PAYLOAD_SEPARATOR in value:
        raise InvalidPayloadError(f"{kind} must not contain '{PAYLOAD_SEPARATOR}': {value!r}")
    return value


def build_invoice_payload(gift_id: str, buyer_id: str) -> str:
    """Payload format "<giftId>:<buyerId>" is shared with already issued invoices."""
    validate_id(gift_id, "gift id")
    validate_id(buyer_id, "buyer id")
    return f"{gift_id}{PAYLOAD_SEPARATOR}{buyer_id}"


def parse_invoice_payload(payload: str) -> Tuple[str, str]:
    """Split a payload into (gift_id, buyer_id)."""
    if not isinstance(payload, str) or payload.count(PAYLOAD_SEPARATOR) != 1:
        raise InvalidPayloadError(f"Malformed invoice payload: {payload!r}")

    gift_id, _, buyer_id = payload.partition(PAYLOAD_SEPARATOR)
    if not gift_id or not buyer_id:
        raise InvalidPayloadError(f"Malformed invoice payload: {payload!r}")
    return gift_id, buyer_id


# ============================================================================
# Abstract Interfaces
# ============================================================================

class MarketStore(ABC):
    """Storage adapter for users, gifts and purchases."""

    @abstractmethod
    async def get_gift(self, gift_id: str) -> Optional[Gift]:
        pass

    @abstractmethod
    async def create_gift(self, gift: Gift) -> Gift:
        """Insert a new gift and add it to the owner's collection."""
        pass

    @abstractmethod
    async def upsert_gift(self, gift: Gift) -> Gift:
        """
        Insert or update a gift.

        Never resets `sold`; a sold gift always comes back with for_sale=False.
        """
        pass

    @abstractmethod
    async def list_gifts_for_sale(self) -> List[Gift]:
        pass

    @abstractmethod
    async def list_gifts_owned_by(self, user_id: str) -> List[Gift]:
        pass

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        """Insert or update profile fields; balance and collection are untouched."""
        pass

    @abstractmethod
    async def credit_user(self, user_id: str, amount: int) -> int:
        """Atomically add stars to a user's balance. Returns new balance."""
        pass

    @abstractmethod
    async def append_purchase(self, purchase: Purchase) -> Purchase:
        pass

    @abstractmethod
    async def list_purchases(self, gift_id: Optional[str] = None) -> List[Purchase]:
        pass

    @abstractmethod
    async def settle_sale(
        self,
        gift_id: str,
        buyer_id: str,
        telegram_payment_charge_id: Optional[str] = None,
    ) -> Optional[Purchase]:
        """
        Atomically mark the gift sold, append the purchase and credit the seller.

        Returns None when the gift is missing or already sold.
        Raises StorageError with nothing committed on failure.
        """
        pass


class MessagingProvider(ABC):
    """Outbound side of the Telegram Bot API used by the market."""

    @abstractmethod
    async def send_invoice(
        self,
        chat_id: str,
        title: str,
        description: str,
        payload: str,
        provider_token: str,
        currency: str,
        prices: List[dict],
    ) -> dict:
        pass

    @abstractmethod
    async def send_message(self, chat_id: str, text: str) -> dict:
        pass

    @abstractmethod
    async def answer_pre_checkout_query(
        self,
        pre_checkout_query_id: str,
        ok: bool,
        error_message: Optional[str] = None,
    ) -> dict:
        pass


class NotificationService(ABC):
    """Abstract interface for user notifications."""

    @abstractmethod
    async def notify_purchase_delivered(self, buyer_id: str, gift: Gift) -> None:
        pass

    @abstractmethod
    async def notify_gift_sold(self, seller_id: str, gift: Gift) -> None:
        pass


# ============================================================================
# Settlement Engine
# ============================================================================

class SettlementEngine:
    """
    Issues purchase invoices and settles confirmed payments.

    Settlement is driven only by provider confirmations; the store's
    settle_sale is the single critical section (per gift).
    """

    def __init__(
        self,
        store: MarketStore,
        provider: MessagingProvider,
        notification_service: NotificationService,
        provider_token: str = "",
        currency: str = "RUB",
        holds=None,
    ):
        self.store = store
        self.provider = provider
        self.notifications = notification_service
        self.provider_token = provider_token
        self.currency = currency
        self.holds = holds

    async def issue_purchase_invoice(self, buyer_id: str, gift_id: str) -> InvoiceResult:
        """
        Send an invoice for a listed gift.

        1. Check availability
        2. Price the gift
        3. Build payload
        4. Optionally take a short-lived hold
        5. sendInvoice

        Gift state is not changed here; only a confirmed payment sells it.
        """
        gift = await self.store.get_gift(gift_id)
        if gift is None or not gift.is_available:
            track_invoice("rejected")
            raise GiftUnavailableError(gift_id)
        if gift.owner_id == buyer_id:
            track_invoice("rejected")
            raise GiftUnavailableError(gift_id, "You cannot buy your own gift")

        payload = build_invoice_payload(gift.id, buyer_id)
        amount = stars_to_currency(gift.price_stars)
        amount_minor = to_minor_units(amount)

        if self.holds is not None and not await self.holds.acquire(gift.id, buyer_id):
            track_invoice("rejected")
            raise GiftUnavailableError(gift.id, "Gift is reserved by another buyer")

        try:
            response = await self.provider.send_invoice(
                chat_id=buyer_id,
                title=gift.name,
                description=gift.description or gift.name,
                payload=payload,
                provider_token=self.provider_token,
                currency=self.currency,
                prices=[{"label": gift.name, "amount": amount_minor}],
            )
        except ProviderError:
            track_invoice("failed")
            if self.holds is not None:
                await self.holds.release(gift.id)
            raise

        track_invoice("issued")
        logger.info(
            f"Invoice issued: gift={gift.id}, buyer={buyer_id}, "
            f"{gift.price_stars} stars = {amount} {self.currency}"
        )

        return InvoiceResult(
            gift_id=gift.id,
            buyer_id=buyer_id,
            payload=payload,
            amount=amount,
            amount_minor=amount_minor,
            currency=self.currency,
            provider_response=response,
        )

    async def handle_payment_confirmation(self, confirmation: PaymentConfirmation) -> SettlementResult:
        """
        Settle one successful_payment confirmation.

        Safe to call repeatedly with the same confirmation. Returns a result
        for every outcome that may be acknowledged; StorageError propagates so
        the caller withholds the acknowledgment and Telegram redelivers.
        """
        try:
            gift_id, buyer_id = parse_invoice_payload(confirmation.invoice_payload)
        except InvalidPayloadError as e:
            logger.warning(f"Ignoring payment confirmation: {e}")
            return self._result(SettlementOutcome.INVALID_PAYLOAD)

        gift = await self.store.get_gift(gift_id)
        if gift is None:
            logger.warning(f"Payment confirmation for unknown gift {gift_id} (buyer={buyer_id})")
            return self._result(SettlementOutcome.UNKNOWN_GIFT)

        if gift.sold:
            logger.info(f"Duplicate payment confirmation: gift={gift_id}, buyer={buyer_id}")
            return self._result(SettlementOutcome.DUPLICATE)

        self._check_confirmation(gift, buyer_id, confirmation)

        purchase = await self.store.settle_sale(
            gift_id,
            buyer_id,
            telegram_payment_charge_id=confirmation.telegram_payment_charge_id,
        )
        if purchase is None:
            # Lost the race to a concurrent confirmation
            logger.info(f"Gift {gift_id} settled concurrently, confirmation ignored")
            return self._result(SettlementOutcome.DUPLICATE)

        logger.info(
            f"Gift sold: gift={gift_id}, buyer={buyer_id}, seller={purchase.seller_id}, "
            f"+{purchase.price_stars} stars, {purchase.amount_in_currency} {self.currency}"
        )

        if self.holds is not None:
            await self.holds.release(gift_id)

        await self._notify(gift, purchase)
        return self._result(SettlementOutcome.SETTLED, purchase)

    async def answer_pre_checkout(self, query: PreCheckoutQuery) -> bool:
        """Approve the checkout only while the gift is still purchasable."""
        ok = True
        error_message = None

        try:
            gift_id, _ = parse_invoice_payload(query.invoice_payload)
        except InvalidPayloadError as e:
            logger.warning(f"Rejecting pre-checkout {query.id}: {e}")
            ok, error_message = False, "This order is not valid."
        else:
            gift = await self.store.get_gift(gift_id)
            if gift is None or not gift.is_available:
                ok, error_message = False, "This gift is no longer available."

        try:
            await self.provider.answer_pre_checkout_query(query.id, ok, error_message=error_message)
        except ProviderError as e:
            logger.error(f"Failed to answer pre-checkout {query.id}: {e}")

        return ok

    def _check_confirmation(self, gift: Gift, buyer_id: str, confirmation: PaymentConfirmation):
        """Log discrepancies; the payload stays authoritative."""
        if confirmation.chat_id and confirmation.chat_id != buyer_id:
            logger.warning(
                f"Payer mismatch for gift {gift.id}: chat={confirmation.chat_id}, payload buyer={buyer_id}"
            )

        if confirmation.total_amount is not None:
            expected = to_minor_units(stars_to_currency(gift.price_stars))
            if confirmation.total_amount != expected or (
                confirmation.currency and confirmation.currency != self.currency
            ):
                logger.warning(
                    f"Amount mismatch for gift {gift.id}: expected {expected} {self.currency}, "
                    f"got {confirmation.total_amount} {confirmation.currency}"
                )

    async def _notify(self, gift: Gift, purchase: Purchase):
        """Send buyer and seller notifications; failures never undo the sale."""
        results = await asyncio.gather(
            self.notifications.notify_purchase_delivered(purchase.buyer_id, gift),
            self.notifications.notify_gift_sold(purchase.seller_id, gift),
            return_exceptions=True,
        )

        for kind, result in zip(("buyer", "seller"), results):
            if isinstance(result, Exception):
                track_notification_failure(kind)
                logger.error(f"Failed to notify {kind} about gift {gift.id}: {result}")

    @staticmethod
    def _result(outcome: SettlementOutcome, purchase: Optional[Purchase] = None) -> SettlementResult:
        track_settlement(outcome.value)
        return SettlementResult(outcome=outcome, purchase=purchase)
