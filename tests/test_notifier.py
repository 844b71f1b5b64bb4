"""Tests for the webhook notifier (mocked HTTP)."""

import json

import httpx
import pytest

from bodadispatch import events
from bodadispatch.events import EventBus
from bodadispatch.services.notifier import WebhookNotifier, render_placed, render_rider_status


def _notifier(handler, url="https://hooks.example.com/boda"):
    return WebhookNotifier(url, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_templates():
    assert "KES 225" in render_placed({"order_id": "o1", "price": 225.0})
    assert "KES —" in render_placed({"order_id": "o1", "price": None})
    assert "offline" in render_rider_status({"rider_id": "r1", "new_status": "offline"})


@pytest.mark.asyncio
async def test_send_posts_json():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200)

    notifier = _notifier(handler)
    assert await notifier.send("order.placed", "hello", {"order_id": "o1"}) is True
    assert sent == [{"event": "order.placed", "text": "hello", "payload": {"order_id": "o1"}}]
    await notifier.aclose()


@pytest.mark.asyncio
async def test_send_failure_returns_false():
    notifier = _notifier(lambda r: httpx.Response(500, text="oops"))
    assert await notifier.send("order.placed", "hello") is False


@pytest.mark.asyncio
async def test_network_error_never_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    notifier = _notifier(handler)
    assert await notifier.send("order.placed", "hello") is False


@pytest.mark.asyncio
async def test_disabled_without_url():
    def handler(request):
        raise AssertionError("no HTTP call expected")

    notifier = _notifier(handler, url="")
    bus = EventBus()
    notifier.start(bus)
    assert bus.subscriber_count == 0
    assert await notifier.send("order.placed", "hello") is False


@pytest.mark.asyncio
async def test_bus_events_are_forwarded():
    sent = []

    def handler(request):
        sent.append(json.loads(request.content)["event"])
        return httpx.Response(204)

    bus = EventBus()
    notifier = _notifier(handler)
    notifier.start(bus)
    await bus.emit(events.ORDER_PLACED, order_id="o1", price=180.0)
    await bus.emit(events.ORDER_TRACKING, order_id="o1")  # too chatty to forward
    await bus.emit(events.RIDER_STATUS_CHANGED, rider_id="r1", new_status="available")
    await notifier.drain()

    assert sorted(sent) == sorted([events.ORDER_PLACED, events.RIDER_STATUS_CHANGED])
    await notifier.aclose()
    assert bus.subscriber_count == 0
