"""
Booking Notifications
=====================

Notification templates and the client that delivers them to the
notification service. The booking engine never depends on delivery: every
call from the core goes through ``notify_safely``.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

import httpx
import structlog
from prometheus_client import Counter

from .exceptions import ExternalServiceFailure

logger = structlog.get_logger(__name__)


NOTIFICATIONS_SENT = Counter(
    "booking_notifications_total",
    "Booking notifications by template and outcome",
    ["template", "outcome"],
)


class NotificationTemplate(str, Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_COMPLETED = "booking_completed"
    BOOKING_AUTO_CANCELLED = "booking_auto_cancelled"
    BOOKING_MISSED_CONFIRMATION = "booking_missed_confirmation"
    FUNDS_RELEASED = "funds_released"
    REFUND_PROCESSED = "refund_processed"


_TEMPLATES: Dict[NotificationTemplate, Tuple[str, str]] = {
    NotificationTemplate.BOOKING_CONFIRMED: (
        "Booking Confirmed",
        "Your booking {booking_id} has been confirmed by the property owner.",
    ),
    NotificationTemplate.BOOKING_REJECTED: (
        "Booking Rejected",
        "Your booking {booking_id} was declined by the property owner. {reason}",
    ),
    NotificationTemplate.BOOKING_CANCELLED: (
        "Booking Cancelled",
        "Booking {booking_id} has been cancelled. {reason}",
    ),
    NotificationTemplate.BOOKING_COMPLETED: (
        "Booking Completed",
        "Booking {booking_id} is complete. Thank you for using our platform.",
    ),
    NotificationTemplate.BOOKING_AUTO_CANCELLED: (
        "Booking Auto-Cancelled",
        "Your booking {booking_id} was cancelled because the owner did not confirm "
        "within {hours} hours. Any payment has been refunded to your wallet.",
    ),
    NotificationTemplate.BOOKING_MISSED_CONFIRMATION: (
        "Booking Request Expired",
        "You did not confirm booking {booking_id} within {hours} hours, so it was cancelled.",
    ),
    NotificationTemplate.FUNDS_RELEASED: (
        "Funds Released",
        "{amount} {currency} for booking {booking_id} is now available in your wallet.",
    ),
    NotificationTemplate.REFUND_PROCESSED: (
        "Refund Processed",
        "{amount} {currency} for booking {booking_id} has been refunded to your wallet.",
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


def render(template: NotificationTemplate, data: Dict[str, Any]) -> Tuple[str, str]:
    """Return (title, message); placeholders without data render empty."""
    title, body = _TEMPLATES[template]
    return title, body.format_map(_Blank(data)).strip()


class NotificationService(ABC):
    @abstractmethod
    async def notify(self, user_id: UUID, template: NotificationTemplate, data: Dict[str, Any]) -> None:
        pass


class HttpNotificationService(NotificationService):
    """Posts rendered notifications to the notification service."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    async def get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def notify(self, user_id: UUID, template: NotificationTemplate, data: Dict[str, Any]) -> None:
        title, message = render(template, data)
        client = await self.get_client()

        try:
            response = await client.post(
                self.base_url,
                json={
                    "userId": str(user_id),
                    "template": template.value,
                    "title": title,
                    "message": message,
                    "data": {k: str(v) for k, v in data.items()},
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceFailure("notify", booking_id=data.get("booking_id"), cause=e) from e


async def notify_safely(
    service: NotificationService,
    user_id: UUID,
    template: NotificationTemplate,
    data: Dict[str, Any],
    timeout: float,
) -> bool:
    """Deliver a notification within timeout; failures are logged, never raised."""
    try:
        await asyncio.wait_for(service.notify(user_id, template, data), timeout=timeout)
    except Exception as e:
        NOTIFICATIONS_SENT.labels(template=template.value, outcome="failed").inc()
        logger.warning(
            "Notification failed",
            template=template.value,
            user_id=str(user_id),
            booking_id=str(data.get("booking_id")),
            error=str(e) or type(e).__name__,
        )
        return False

    NOTIFICATIONS_SENT.labels(template=template.value, outcome="sent").inc()
    return True
