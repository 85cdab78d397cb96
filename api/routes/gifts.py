"""Marketplace endpoints: users, gifts, listing and purchase."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import get_current_user_id, get_market_store, get_settlement_engine
from api.services.pricing_service import stars_to_currency
from api.services.settlement_engine import (
    Gift,
    MarketStore,
    NotFoundError,
    PermissionDeniedError,
    SettlementEngine,
    generate_gift_id,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["gifts"])


class CreateGiftRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: Optional[str] = Field(None, alias="ownerId")
    name: str = Field(..., min_length=1, max_length=32)  # Telegram invoice title limit
    description: str = Field("", max_length=255)
    stars: int = Field(1, ge=1)


class SellGiftRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    price_stars: int = Field(..., alias="priceStars", ge=1)


class PurchaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    buyer_id: Optional[str] = Field(None, alias="buyerId")
    gift_id: str = Field(..., alias="giftId")


class PurchaseResponse(BaseModel):
    ok: bool = True
    payload: str
    amount: str
    currency: str
    result: Any = None


def _gift_response(gift: Gift) -> dict:
    data = gift.to_dict()
    data["price"] = str(stars_to_currency(gift.price_stars))
    return data


def _check_acting_user(claimed: Optional[str], current_user_id: str):
    if claimed is not None and str(claimed) != current_user_id:
        raise PermissionDeniedError("Cannot act on behalf of another user")


@router.get("/user")
async def get_user(userId: Optional[str] = None, store: MarketStore = Depends(get_market_store)):
    """User profile and star balance."""
    if not userId:
        raise HTTPException(status_code=400, detail="No userId")

    user = await store.get_user(userId)
    return user.to_dict() if user else {}


@router.get("/gifts")
async def list_gifts(store: MarketStore = Depends(get_market_store)):
    """Gifts currently listed and not sold."""
    return [_gift_response(g) for g in await store.list_gifts_for_sale()]


@router.get("/my_gifts")
async def my_gifts(userId: Optional[str] = None, store: MarketStore = Depends(get_market_store)):
    if not userId:
        raise HTTPException(status_code=400, detail="No userId")

    return [_gift_response(g) for g in await store.list_gifts_owned_by(userId)]


@router.post("/create_gift")
async def create_gift(
    request: CreateGiftRequest,
    user_id: str = Depends(get_current_user_id),
    store: MarketStore = Depends(get_market_store),
):
    """Create a gift owned by the caller; it is not listed until sold via /sell_gift."""
    _check_acting_user(request.owner_id, user_id)

    gift = await store.create_gift(Gift(
        id=generate_gift_id(),
        owner_id=user_id,
        name=request.name,
        description=request.description,
        price_stars=request.stars,
    ))
    logger.info(f"Gift created: {gift.id} by user {user_id}")
    return {"ok": True, "gift": _gift_response(gift)}


@router.post("/sell_gift")
async def sell_gift(
    request: SellGiftRequest,
    user_id: str = Depends(get_current_user_id),
    store: MarketStore = Depends(get_market_store),
):
    """List one of the caller's gifts at a star price."""
    gift = await store.get_gift(request.id)
    if gift is None:
        raise NotFoundError(f"Gift {request.id} not found")
    if gift.owner_id != user_id:
        raise PermissionDeniedError("Only the owner can sell this gift")
    if gift.sold:
        raise HTTPException(status_code=400, detail="Gift already sold")

    gift.price_stars = request.price_stars
    gift.for_sale = True
    gift = await store.upsert_gift(gift)
    logger.info(f"Gift listed: {gift.id} for {gift.price_stars} stars")
    return {"ok": True, "gift": _gift_response(gift)}


@router.post("/purchase", response_model=PurchaseResponse)
async def purchase(
    request: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    engine: SettlementEngine = Depends(get_settlement_engine),
):
    """
    Send a Telegram invoice for a listed gift to the caller.

    The gift stays listed until the payment confirmation arrives.
    """
    _check_acting_user(request.buyer_id, user_id)

    invoice = await engine.issue_purchase_invoice(user_id, request.gift_id)
    return PurchaseResponse(
        payload=invoice.payload,
        amount=str(invoice.amount),
        currency=invoice.currency,
        result=invoice.provider_response,
    )
