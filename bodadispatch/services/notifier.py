"""
Webhook Notification Service — pushes order/rider changes to the presentation layer.

Every notification is a JSON POST of ``{event, text, payload}`` to
``NOTIFY_WEBHOOK_URL``. Failures are logged but NEVER raise: sends run as
background tasks so a slow webhook can't hold up a transition.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from bodadispatch import events
from bodadispatch.events import Event, EventBus

logger = logging.getLogger(__name__)


# ── Message Templates ──────────────────────────────────────

def _price(payload: dict) -> str:
    price = payload.get("price")
    return f"KES {price:,.0f}" if price is not None else "KES —"


def render_placed(p: dict) -> str:
    return f"📦 Order {p['order_id']} placed — {_price(p)}. Looking for a rider..."


def render_offered(p: dict) -> str:
    return f"🛵 Order {p['order_id']} offered to rider {p['rider_id']} ({_price(p)})"


def render_searching(p: dict) -> str:
    return f"⏳ No rider nearby for order {p['order_id']} yet. We'll keep searching."


def render_declined(p: dict) -> str:
    return f"↩️ Rider {p['declined_by']} declined order {p['order_id']}"


def render_accepted(p: dict) -> str:
    return f"✅ Order {p['order_id']} accepted by rider {p['rider_id']}. Heading to pickup."


def render_in_progress(p: dict) -> str:
    return f"🚚 Order {p['order_id']} picked up and on its way"


def render_completed(p: dict) -> str:
    return f"🎉 Order {p['order_id']} delivered. Thank you!"


def render_cancelled(p: dict) -> str:
    return f"❌ Order {p['order_id']} was cancelled"


def render_repriced(p: dict) -> str:
    return f"💰 Order {p['order_id']} repriced to {_price(p)}"


def render_rider_status(p: dict) -> str:
    return f"🧑‍✈️ Rider {p['rider_id']} is now {p['new_status']}"


TEMPLATES: dict[str, Callable[[dict], str]] = {
    events.ORDER_PLACED: render_placed,
    events.ORDER_OFFERED: render_offered,
    events.ORDER_SEARCHING: render_searching,
    events.ORDER_DECLINED: render_declined,
    events.ORDER_ACCEPTED: render_accepted,
    events.ORDER_IN_PROGRESS: render_in_progress,
    events.ORDER_COMPLETED: render_completed,
    events.ORDER_CANCELLED: render_cancelled,
    events.ORDER_REPRICED: render_repriced,
    events.RIDER_STATUS_CHANGED: render_rider_status,
}


class WebhookNotifier:
    def __init__(
        self,
        url: str,
        http: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: list[Callable[[], None]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def start(self, bus: EventBus) -> None:
        if self._unsubscribe or not self.enabled:
            return
        self._unsubscribe = [
            bus.subscribe("order.*", self._on_event),
            bus.subscribe(events.RIDER_STATUS_CHANGED, self._on_event),
        ]

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        await self.drain()
        await self._http.aclose()

    async def _on_event(self, event: Event) -> None:
        render = TEMPLATES.get(event.name)
        if render is None:
            return
        task = asyncio.create_task(self.send(event.name, render(event.payload), event.payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send(self, event_name: str, text: str, payload: dict[str, Any] | None = None) -> bool:
        """
        POST one notification to the webhook.

        Returns:
            True if the webhook answered 2xx, False otherwise.
        """
        if not self.enabled:
            logger.debug("NOTIFY_WEBHOOK_URL not configured — dropping %s", event_name)
            return False

        body = {"event": event_name, "text": text, "payload": payload or {}}
        try:
            resp = await self._http.post(self.url, json=body)
        except httpx.HTTPError as e:
            logger.error("Notification error: event=%s, error=%s", event_name, e)
            return False

        if resp.is_success:
            logger.info("Notification sent: event=%s, text_preview='%s'", event_name, text[:80])
            return True
        logger.warning(
            "Notification failed: event=%s, status=%s, body=%s",
            event_name, resp.status_code, resp.text[:200],
        )
        return False
