"""
In-process event bus.

Registry and ledger changes are published here as ``Event`` objects. The
dispatcher, the live-tracking pipeline, the webhook notifier and the order
journal subscribe to it. Handler failures are logged and never propagate
back into the publisher, so a broken observer cannot undo a committed
transition.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[["Event"], Awaitable[None]]


# ── Event names ────────────────────────────────────────────

RIDER_REGISTERED = "rider.registered"
RIDER_STATUS_CHANGED = "rider.status_changed"
RIDER_LOCATION_UPDATED = "rider.location_updated"
RIDER_DEACTIVATED = "rider.deactivated"

ORDER_PLACED = "order.placed"
ORDER_OFFERED = "order.offered"
ORDER_SEARCHING = "order.searching"
ORDER_DECLINED = "order.declined"
ORDER_ACCEPTED = "order.accepted"
ORDER_IN_PROGRESS = "order.in_progress"
ORDER_COMPLETED = "order.completed"
ORDER_CANCELLED = "order.cancelled"
ORDER_REPRICED = "order.repriced"
ORDER_TRACKING = "order.tracking"


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.name,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class EventBus:
    """Pattern-based publish/subscribe.

    Patterns use shell wildcards, so ``"order.*"`` receives every order
    event and ``"*"`` receives everything.
    """

    def __init__(self):
        self._handlers: list[tuple[str, Handler]] = []

    def subscribe(self, pattern: str, handler: Handler) -> Callable[[], None]:
        entry = (pattern, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: Event) -> None:
        # Snapshot so handlers may subscribe/unsubscribe while we iterate
        for pattern, handler in list(self._handlers):
            if not fnmatch.fnmatchcase(event.name, pattern):
                continue
            try:
                await handler(event)
            except Exception:
                logger.exception("Event handler failed: event=%s handler=%r", event.name, handler)

    async def emit(self, name: str, **payload: Any) -> Event:
        event = Event(name=name, payload=payload)
        await self.publish(event)
        return event
