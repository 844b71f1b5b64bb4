"""
Location Update Pipeline — rider position reports and live tracking.

Each report is written to the registry first. If the rider is carrying an
order, the pipeline then computes the rider→pickup (accepted) or
rider→dropoff (in-progress) route cost and pushes it to every open watch
on that order. Losing the position source forces the rider offline.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator

from bodadispatch import events
from bodadispatch.errors import NotFound
from bodadispatch.events import Event, EventBus
from bodadispatch.models import Location, Order, OrderStatus, Rider, RiderStatus
from bodadispatch.services.maps import RoutingService
from bodadispatch.services.order_ledger import OrderLedger
from bodadispatch.services.rider_registry import RiderRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackingUpdate:
    order_id: str
    rider_id: str
    leg: str  # "pickup" or "dropoff"
    rider_location: Location
    distance_km: float
    duration_min: float
    source: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "rider_id": self.rider_id,
            "leg": self.leg,
            "rider_lat": self.rider_location.lat,
            "rider_lng": self.rider_location.lng,
            "distance_km": self.distance_km,
            "eta_min": self.duration_min,
            "source": self.source,
            "at": self.at.isoformat(),
        }


class LocationWatch:
    """A scoped subscription to tracking updates for one order.

    ``None`` on the queue marks the end of the stream.
    """

    def __init__(self, order_id: str, maxsize: int = 32):
        self.id = uuid.uuid4().hex
        self.order_id = order_id
        self.closed = False
        self._queue: asyncio.Queue[TrackingUpdate | None] = asyncio.Queue(maxsize=maxsize)

    def push(self, update: TrackingUpdate) -> None:
        if self.closed:
            return
        if self._queue.full():
            # Slow consumer: drop the oldest, latest position matters most
            self._queue.get_nowait()
        self._queue.put_nowait(update)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def next(self) -> TrackingUpdate | None:
        return await self._queue.get()

    async def updates(self) -> AsyncIterator[TrackingUpdate]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class ReportingSession:
    """One rider device streaming positions. Cancelled when the rider goes offline."""

    def __init__(self, rider_id: str, pipeline: LocationPipeline):
        self.rider_id = rider_id
        self._pipeline = pipeline
        self.cancelled = asyncio.Event()

    def cancel(self) -> None:
        self.cancelled.set()

    async def report(
        self,
        lat: float,
        lng: float,
        sequence: int | None = None,
        accuracy: float | None = None,
    ) -> TrackingUpdate | None:
        if self.cancelled.is_set():
            return None
        return await self._pipeline.report_location(self.rider_id, lat, lng, sequence, accuracy)


class LocationPipeline:
    def __init__(
        self,
        registry: RiderRegistry,
        ledger: OrderLedger,
        routing: RoutingService,
        bus: EventBus,
        watch_queue_size: int = 32,
    ):
        self.registry = registry
        self.ledger = ledger
        self.routing = routing
        self.bus = bus
        self.watch_queue_size = watch_queue_size
        self._watches: dict[str, dict[str, LocationWatch]] = {}
        self._sessions: dict[str, ReportingSession] = {}

        bus.subscribe(events.ORDER_COMPLETED, self._on_order_closed)
        bus.subscribe(events.ORDER_CANCELLED, self._on_order_closed)
        bus.subscribe(events.RIDER_STATUS_CHANGED, self._on_rider_status)

    # ── Reports ────────────────────────────────────────────

    async def report_location(
        self,
        rider_id: str,
        lat: float,
        lng: float,
        sequence: int | None = None,
        accuracy: float | None = None,
    ) -> TrackingUpdate | None:
        """Ingest one position report. Duplicates and stale reports are ignored."""
        applied = await self.registry.upsert_location(rider_id, lat, lng, sequence)
        if not applied:
            logger.debug("Ignored stale/duplicate location for rider %s (seq=%s)", rider_id, sequence)
            return None
        if accuracy is not None:
            logger.debug("Rider %s location accuracy %.0fm", rider_id, accuracy)

        rider = self.registry.get(rider_id)
        if not rider.active_order_id:
            return None
        try:
            order = self.ledger.get(rider.active_order_id)
        except NotFound:
            logger.warning("Rider %s points at unknown order %s", rider_id, rider.active_order_id)
            return None
        return await self._publish_tracking(rider, order)

    async def report_location_error(self, rider_id: str, reason: str = "permission_denied") -> Rider:
        """Position source lost: the rider cannot be matched, so force offline."""
        logger.warning("Location unavailable for rider %s (%s), forcing offline", rider_id, reason)
        return await self.registry.set_status(rider_id, RiderStatus.OFFLINE)

    async def _publish_tracking(self, rider: Rider, order: Order) -> TrackingUpdate | None:
        if order.status == OrderStatus.ACCEPTED:
            leg, target = "pickup", order.pickup.location
        elif order.status == OrderStatus.IN_PROGRESS:
            leg, target = "dropoff", order.dropoff.location
        else:
            return None
        if target is None or rider.location is None:
            return None

        cost = await self.routing.route([rider.location, target], rider.profile)
        update = TrackingUpdate(
            order_id=order.id,
            rider_id=rider.id,
            leg=leg,
            rider_location=rider.location,
            distance_km=cost.distance_km,
            duration_min=cost.duration_min,
            source=cost.source,
        )
        for watch in list(self._watches.get(order.id, {}).values()):
            watch.push(update)
        await self.bus.emit(events.ORDER_TRACKING, **update.to_dict())
        return update

    # ── Watches ────────────────────────────────────────────

    def open_watch(self, order_id: str) -> LocationWatch:
        order = self.ledger.get(order_id)
        watch = LocationWatch(order_id, self.watch_queue_size)
        if order.is_terminal:
            watch.close()
            return watch
        self._watches.setdefault(order_id, {})[watch.id] = watch
        return watch

    def close_watch(self, watch: LocationWatch) -> None:
        watch.close()
        per_order = self._watches.get(watch.order_id)
        if per_order is None:
            return
        per_order.pop(watch.id, None)
        if not per_order:
            del self._watches[watch.order_id]

    @asynccontextmanager
    async def watch(self, order_id: str) -> AsyncIterator[LocationWatch]:
        w = self.open_watch(order_id)
        try:
            yield w
        finally:
            self.close_watch(w)

    def active_watches(self, order_id: str | None = None) -> int:
        if order_id is not None:
            return len(self._watches.get(order_id, {}))
        return sum(len(ws) for ws in self._watches.values())

    def _close_order_watches(self, order_id: str) -> None:
        for w in list(self._watches.get(order_id, {}).values()):
            self.close_watch(w)

    async def _on_order_closed(self, event: Event) -> None:
        self._close_order_watches(event.payload["order_id"])

    async def _on_rider_status(self, event: Event) -> None:
        if event.payload.get("new_status") != RiderStatus.OFFLINE.value:
            return
        self._cancel_session(event.payload["rider_id"])
        order_id = event.payload.get("active_order_id")
        if order_id:
            self._close_order_watches(order_id)

    # ── Rider reporting sessions ───────────────────────────

    @asynccontextmanager
    async def session(self, rider_id: str) -> AsyncIterator[ReportingSession]:
        """Scope a rider device's position stream.

        Opening a new session for the same rider cancels the previous one.
        When the scope exits without the rider having gone offline through a
        status change, the rider is forced offline: a disconnected device
        means no fresh location.
        """
        self.registry.get(rider_id)
        self._cancel_session(rider_id)
        s = ReportingSession(rider_id, self)
        self._sessions[rider_id] = s
        try:
            yield s
        finally:
            if self._sessions.get(rider_id) is s:
                del self._sessions[rider_id]
                s.cancel()
                rider = self.registry.get(rider_id)
                if rider.status != RiderStatus.OFFLINE:
                    await self.report_location_error(rider_id, "disconnected")

    def active_sessions(self) -> int:
        return len(self._sessions)

    def _cancel_session(self, rider_id: str) -> None:
        s = self._sessions.pop(rider_id, None)
        if s is not None:
            s.cancel()
