"""Authentication service with JWT tokens.

Supports:
- Telegram Login Widget authentication
- Telegram WebApp initData authentication
- JWT access tokens bound to the verified Telegram user id
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import parse_qsl

import jwt
from pydantic import BaseModel

from config.settings import SERVER_SECRET, TELEGRAM_BOT_TOKEN

logger = logging.getLogger("api.auth")

# JWT Configuration
JWT_SECRET = SERVER_SECRET
JWT_ALGORITHM = "HS256"
JWT_ACCESS_EXPIRY_MINUTES = 24 * 60
AUTH_DATE_MAX_AGE_SECONDS = 86400


class TokenResponse(BaseModel):
    """Access token issued after a verified Telegram login."""
    access_token: str
    expires_in: int  # seconds until access token expires
    token_type: str = "Bearer"
    user_id: str


class TelegramIdentity(BaseModel):
    """Verified Telegram profile."""
    id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    photo_url: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        return self.username or self.first_name


def _data_check_string(data: dict) -> str:
    """Sorted key=value lines, None values dropped."""
    return "\n".join(f"{k}={v}" for k, v in sorted(data.items()) if v is not None)


def _auth_date_fresh(auth_date) -> bool:
    if auth_date is None:
        logger.error("[TG Auth] No auth_date in auth data")
        return False
    try:
        age = datetime.now(timezone.utc).timestamp() - int(auth_date)
    except (TypeError, ValueError):
        logger.error("[TG Auth] Invalid auth_date format")
        return False
    if age > AUTH_DATE_MAX_AGE_SECONDS:
        logger.error(f"[TG Auth] auth_date too old: {age:.0f}s > {AUTH_DATE_MAX_AGE_SECONDS}s")
        return False
    return True


class AuthService:
    """Telegram signature checks and token handling."""

    @staticmethod
    def validate_telegram_auth(auth_data: dict, bot_token: Optional[str] = None) -> bool:
        """Validate Telegram Login Widget authentication data.

        Telegram sends: id, first_name, last_name, username, photo_url, auth_date, hash
        We verify the hash using sha256(bot token) as the HMAC key.
        """
        bot_token = bot_token or TELEGRAM_BOT_TOKEN
        if not bot_token:
            logger.error("[TG Auth] TELEGRAM_BOT_TOKEN not set!")
            return False

        # Make a copy to avoid mutating original
        data = dict(auth_data)
        received_hash = data.pop("hash", None)
        if not received_hash:
            logger.error("[TG Auth] No hash in auth data")
            return False

        if not _auth_date_fresh(data.get("auth_date")):
            return False

        secret_key = hashlib.sha256(bot_token.encode()).digest()
        expected_hash = hmac.new(
            secret_key,
            _data_check_string(data).encode(),
            hashlib.sha256,
        ).hexdigest()

        match = hmac.compare_digest(expected_hash, str(received_hash))
        if not match:
            logger.error("[TG Auth] Hash mismatch!")
        return match

    @staticmethod
    def validate_webapp_init_data(init_data: str, bot_token: Optional[str] = None) -> Optional[TelegramIdentity]:
        """Validate WebApp initData and return the embedded user.

        The HMAC key is HMAC_SHA256("WebAppData", bot_token).
        """
        bot_token = bot_token or TELEGRAM_BOT_TOKEN
        if not bot_token or not init_data:
            return None

        data = dict(parse_qsl(init_data, keep_blank_values=True))
        received_hash = data.pop("hash", None)
        if not received_hash:
            logger.error("[TG WebApp] No hash in initData")
            return None

        if not _auth_date_fresh(data.get("auth_date")):
            return None

        secret_key = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
        expected_hash = hmac.new(
            secret_key,
            _data_check_string(data).encode(),
            hashlib.sha256,
        ).hexdigest()

        if not hmac.compare_digest(expected_hash, received_hash):
            logger.error("[TG WebApp] Hash mismatch!")
            return None

        try:
            user = json.loads(data.get("user", ""))
            return TelegramIdentity(
                id=str(user["id"]),
                username=user.get("username"),
                first_name=user.get("first_name"),
                photo_url=user.get("photo_url"),
            )
        except (ValueError, KeyError, TypeError):
            logger.error("[TG WebApp] initData has no valid user")
            return None

    @staticmethod
    def create_access_token(user_id: str) -> str:
        """Create a JWT access token."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "type": "access",
            "exp": now + timedelta(minutes=JWT_ACCESS_EXPIRY_MINUTES),
            "iat": now,
        }
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

    @staticmethod
    def issue_token(user_id: str) -> TokenResponse:
        return TokenResponse(
            access_token=AuthService.create_access_token(user_id),
            expires_in=JWT_ACCESS_EXPIRY_MINUTES * 60,
            user_id=str(user_id),
        )

    @staticmethod
    def verify_access_token(token: str) -> Optional[str]:
        """Verify an access token and return the Telegram user id."""
        try:
            payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None

        if payload.get("type") != "access":
            return None
        return payload.get("sub")
