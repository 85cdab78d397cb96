"""
Telegram Bot API client.

Thin httpx wrapper around the Bot API methods the marketplace needs:
sendInvoice, sendMessage and answerPreCheckoutQuery.
"""

import asyncio
import logging
from typing import Any, List, Optional

import httpx

from api.services.metrics import TelegramTimer
from api.services.settlement_engine import MessagingProvider, ProviderError

logger = logging.getLogger(__name__)


class TelegramBotClient(MessagingProvider):
    """Bot API client with bounded timeouts and retry on transient errors."""

    def __init__(
        self,
        bot_token: str,
        base_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        max_retries: int = 3,
    ):
        self.bot_token = bot_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/bot{self.bot_token}",
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self._client

    async def _backoff(self, seconds: float):
        await asyncio.sleep(seconds)

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, method: str, payload: dict, retry: bool = True) -> Any:
        """
        Call a Bot API method and return its `result`.

        Retries 429 (honouring retry_after), 5xx and network errors with
        exponential backoff. ok=false responses raise ProviderError.
        With retry=False a single attempt is made.
        """
        client = await self._get_client()
        last_error: Optional[ProviderError] = None
        attempts = self.max_retries if retry else 1

        for attempt in range(attempts):
            try:
                with TelegramTimer(method):
                    response = await client.post(f"/{method}", json=payload)
            except (httpx.TimeoutException, httpx.RequestError) as e:
                last_error = ProviderError("telegram", "network", f"{type(e).__name__}: {e}")
                if attempt < attempts - 1:
                    await self._backoff(2 ** attempt)
                continue

            logger.debug(f"Telegram API {method}: {response.status_code}")

            try:
                data = response.json()
            except ValueError:
                data = {}

            if response.status_code == 429:
                retry_after = (data.get("parameters") or {}).get("retry_after", 2 ** attempt)
                last_error = ProviderError("telegram", "429", data.get("description", "Too Many Requests"))
                if attempt < attempts - 1:
                    await self._backoff(retry_after)
                continue

            if response.status_code >= 500:
                last_error = ProviderError("telegram", str(response.status_code), response.text)
                if attempt < attempts - 1:
                    await self._backoff(2 ** attempt)
                continue

            if not data.get("ok"):
                # Client error - don't retry
                raise ProviderError(
                    provider="telegram",
                    error_code=str(data.get("error_code", response.status_code)),
                    message=data.get("description", response.text),
                )

            return data.get("result")

        raise last_error or ProviderError("telegram", "max_retries", "Max retries exceeded")

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
        return await self.call("sendInvoice", {
            "chat_id": chat_id,
            "title": title,
            "description": description,
            "payload": payload,
            "provider_token": provider_token,
            "currency": currency,
            "prices": prices,
        })

    async def send_message(self, chat_id: str, text: str) -> dict:
        # Notifications are best-effort: one attempt only
        return await self.call("sendMessage", {"chat_id": chat_id, "text": text}, retry=False)

    async def answer_pre_checkout_query(
        self,
        pre_checkout_query_id: str,
        ok: bool,
        error_message: Optional[str] = None,
    ) -> dict:
        payload = {"pre_checkout_query_id": pre_checkout_query_id, "ok": ok}
        if not ok and error_message:
            payload["error_message"] = error_message
        return await self.call("answerPreCheckoutQuery", payload)
