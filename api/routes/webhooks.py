"""Telegram bot webhook: payment confirmations and pre-checkout queries."""

import hmac
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from api.dependencies import get_settlement_engine
from api.services.settlement_engine import (
    PaymentConfirmation,
    PreCheckoutQuery,
    SettlementEngine,
    StorageError,
)
from config import settings

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/webhook")
async def handle_telegram_webhook(
    request: Request,
    engine: SettlementEngine = Depends(get_settlement_engine),
    secret_token: Optional[str] = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    """
    Handle Telegram updates.

    Telegram redelivers until it gets a 2xx response, so:
    - 200 for processed, duplicate or unusable updates
    - 500 when storage fails mid-settlement, to trigger redelivery
    """
    expected_secret = settings.TELEGRAM_WEBHOOK_SECRET
    if expected_secret and not hmac.compare_digest(secret_token or "", expected_secret):
        logger.warning("Telegram webhook with invalid secret token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret token")

    try:
        update = await request.json()
    except ValueError as e:
        logger.error(f"Invalid JSON in Telegram webhook: {e}")
        # Never valid, retrying will not help
        return {"status": "ignored", "message": "Invalid JSON payload"}

    if not isinstance(update, dict):
        return {"status": "ignored", "message": "Unexpected update format"}

    update_id = update.get("update_id")
    start_time = time.time()

    query = PreCheckoutQuery.from_update(update)
    if query is not None:
        ok = await engine.answer_pre_checkout(query)
        return {"status": "answered", "ok": ok}

    confirmation = PaymentConfirmation.from_update(update)
    if confirmation is None:
        return {"status": "ignored", "message": "No payment in update"}

    try:
        result = await engine.handle_payment_confirmation(confirmation)
    except StorageError as e:
        logger.error(f"Telegram webhook settlement failed: update={update_id}, error={e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Settlement failed, retry later",
        )

    duration_ms = (time.time() - start_time) * 1000
    logger.info(
        f"Telegram payment handled: update={update_id}, outcome={result.outcome.value}, "
        f"duration={duration_ms:.0f}ms"
    )
    return {"status": result.outcome.value}
