"""Prometheus metrics for invoicing, settlement and Telegram API calls."""

import time

from prometheus_client import Counter, Histogram

invoices_issued = Counter(
    "giftmarket_invoices_total",
    "Purchase invoices issued",
    ["status"],
)

settlements = Counter(
    "giftmarket_settlements_total",
    "Payment confirmations handled, by outcome",
    ["outcome"],
)

notification_failures = Counter(
    "giftmarket_notification_failures_total",
    "Best-effort notifications that could not be delivered",
    ["kind"],
)

telegram_request_duration = Histogram(
    "giftmarket_telegram_request_duration_seconds",
    "Telegram Bot API request duration",
    ["method"],
)


def track_invoice(status: str) -> None:
    invoices_issued.labels(status=status).inc()


def track_settlement(outcome: str) -> None:
    settlements.labels(outcome=outcome).inc()


def track_notification_failure(kind: str) -> None:
    notification_failures.labels(kind=kind).inc()


class TelegramTimer:
    """Context manager timing a single Bot API call."""
    
    def __init__(self, method: str):
        self.method = method
        self._start = 0.0
    
    def __enter__(self):
        self._start = time.time()
        return self
    
    def __exit__(self, exc_type, exc, tb):
        telegram_request_duration.labels(method=self.method).observe(time.time() - self._start)
        return False
