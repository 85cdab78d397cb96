"""Authentication API routes.

Endpoints:
- GET /auth - Telegram Login Widget redirect target
- POST /api/auth/telegram - Login with Telegram Login Widget data
- POST /api/auth/webapp - Login with Telegram WebApp initData
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from api.dependencies import get_market_store
from api.services.auth_service import (
    AuthService,
    JWT_ACCESS_EXPIRY_MINUTES,
    TelegramIdentity,
    TokenResponse,
)
from api.services.settlement_engine import MarketStore, User

logger = logging.getLogger(__name__)
router = APIRouter(tags=["auth"])


class TelegramAuthRequest(BaseModel):
    """Telegram Login Widget auth data."""
    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None
    auth_date: int
    hash: str


class WebAppAuthRequest(BaseModel):
    init_data: str = Field(..., alias="initData")


async def _register(store: MarketStore, identity: TelegramIdentity) -> User:
    return await store.upsert_user(User(
        id=identity.id,
        display_name=identity.display_name,
        avatar_url=identity.photo_url or "",
    ))


@router.get("/auth")
async def telegram_login_redirect(request: Request, store: MarketStore = Depends(get_market_store)):
    """Login widget redirect: verify, register user, set token cookie, go to the app."""
    query = dict(request.query_params)
    if not AuthService.validate_telegram_auth(query):
        raise HTTPException(status_code=403, detail="Invalid Telegram Login")

    identity = TelegramIdentity(
        id=str(query["id"]),
        username=query.get("username"),
        first_name=query.get("first_name"),
        photo_url=query.get("photo_url"),
    )
    await _register(store, identity)
    logger.info(f"Telegram login: user={identity.id}")

    response = RedirectResponse(url=f"/index.html?userId={quote(identity.id)}", status_code=302)
    response.set_cookie(
        "access_token",
        AuthService.create_access_token(identity.id),
        max_age=JWT_ACCESS_EXPIRY_MINUTES * 60,
        httponly=True,
        samesite="lax",
    )
    return response


@router.post("/api/auth/telegram", response_model=TokenResponse)
async def telegram_login(request: TelegramAuthRequest, store: MarketStore = Depends(get_market_store)):
    """Exchange Login Widget data for an access token."""
    if not AuthService.validate_telegram_auth(request.model_dump()):
        raise HTTPException(status_code=403, detail="Invalid Telegram Login")

    identity = TelegramIdentity(
        id=str(request.id),
        username=request.username,
        first_name=request.first_name,
        photo_url=request.photo_url,
    )
    await _register(store, identity)
    return AuthService.issue_token(identity.id)


@router.post("/api/auth/webapp", response_model=TokenResponse)
async def webapp_login(request: WebAppAuthRequest, store: MarketStore = Depends(get_market_store)):
    """Exchange WebApp initData for an access token."""
    identity = AuthService.validate_webapp_init_data(request.init_data)
    if identity is None:
        raise HTTPException(status_code=403, detail="Invalid WebApp init data")

    await _register(store, identity)
    return AuthService.issue_token(identity.id)
