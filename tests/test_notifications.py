import asyncio
import json
import uuid

import httpx
import pytest

from booking_engine.exceptions import ExternalServiceFailure
from booking_engine.notifications import (
    HttpNotificationService,
    NotificationService,
    NotificationTemplate,
    notify_safely,
    render,
)


def test_render_fills_placeholders():
    title, message = render(
        NotificationTemplate.FUNDS_RELEASED,
        {"amount": "95000.00", "currency": "NGN", "booking_id": "b-1"},
    )

    assert title == "Funds Released"
    assert message == "95000.00 NGN for booking b-1 is now available in your wallet."


def test_render_blanks_missing_data():
    _, message = render(NotificationTemplate.BOOKING_CANCELLED, {"booking_id": "b-1"})

    assert message == "Booking b-1 has been cancelled."


async def test_http_service_posts_rendered_payload():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = HttpNotificationService("http://notify.local/notifications", client=client)
    user_id = uuid.uuid4()

    await service.notify(user_id, NotificationTemplate.BOOKING_CONFIRMED, {"booking_id": "b-1"})
    await service.close()

    body = json.loads(requests[0].content)
    assert body["userId"] == str(user_id)
    assert body["template"] == "booking_confirmed"
    assert body["title"] == "Booking Confirmed"
    assert body["data"] == {"booking_id": "b-1"}


async def test_http_error_becomes_external_failure():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    service = HttpNotificationService("http://notify.local/notifications", client=client)

    with pytest.raises(ExternalServiceFailure) as exc_info:
        await service.notify(uuid.uuid4(), NotificationTemplate.BOOKING_REJECTED, {"booking_id": "b-1"})

    assert exc_info.value.side_effect == "notify"
    await service.close()


class HangingNotifier(NotificationService):
    async def notify(self, user_id, template, data):
        await asyncio.sleep(10)


class BrokenNotifier(NotificationService):
    async def notify(self, user_id, template, data):
        raise ConnectionError("refused")


@pytest.mark.parametrize("service", [HangingNotifier(), BrokenNotifier()])
async def test_notify_safely_never_raises(service):
    delivered = await notify_safely(
        service, uuid.uuid4(), NotificationTemplate.BOOKING_COMPLETED, {"booking_id": "b-1"}, timeout=0.05
    )

    assert delivered is False
