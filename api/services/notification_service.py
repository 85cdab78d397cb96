"""Telegram notifications for buyers and sellers."""

import logging

from api.services.settlement_engine import Gift, MessagingProvider, NotificationService

logger = logging.getLogger(__name__)


class TelegramNotificationService(NotificationService):
    """Sends sale notifications as plain bot messages."""

    def __init__(self, provider: MessagingProvider):
        self.provider = provider

    async def notify_purchase_delivered(self, buyer_id: str, gift: Gift) -> None:
        await self.provider.send_message(
            buyer_id,
            f"🎁 Purchase successful! You received the gift: {gift.name}",
        )
        logger.info(f"Buyer {buyer_id} notified about gift {gift.id}")

    async def notify_gift_sold(self, seller_id: str, gift: Gift) -> None:
        await self.provider.send_message(
            seller_id,
            f'💰 Your gift "{gift.name}" has been sold! +{gift.price_stars} ⭐',
        )
        logger.info(f"Seller {seller_id} notified about gift {gift.id}")
