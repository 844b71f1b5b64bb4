"""
Dispatcher — offers pending orders to the best rider and keeps re-trying.

An offer is a tentative hold on the order for one rider; it is not a
status change. The rider answers through the lifecycle coordinator
(accept or decline). Orders with no reachable rider stay *searching* and
are re-evaluated whenever a rider comes online or moves.

Matching runs in background tasks so registry writes and status
transitions never wait on route lookups.
"""

from __future__ import annotations

import asyncio
import logging

from bodadispatch import events
from bodadispatch.errors import Conflict, NoCandidates, NotFound
from bodadispatch.events import Event, EventBus
from bodadispatch.models import Order, OrderStatus, Rider, RiderStatus
from bodadispatch.services.matching import MatchingEngine
from bodadispatch.services.order_ledger import OrderLedger

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(
        self,
        ledger: OrderLedger,
        matching: MatchingEngine,
        bus: EventBus,
        auto_dispatch: bool = True,
    ):
        self.ledger = ledger
        self.matching = matching
        self.bus = bus
        self.auto_dispatch = auto_dispatch
        self._searching: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = []

    # ── Wiring ─────────────────────────────────────────────

    def start(self) -> None:
        if self._unsubscribe:
            return
        sub = self.bus.subscribe
        self._unsubscribe = [
            sub(events.ORDER_DECLINED, self._on_order_open),
            sub(events.RIDER_STATUS_CHANGED, self._on_rider_status),
            sub(events.RIDER_LOCATION_UPDATED, self._on_rider_moved),
            sub(events.ORDER_ACCEPTED, self._on_order_closed),
            sub(events.ORDER_CANCELLED, self._on_order_closed),
        ]
        if self.auto_dispatch:
            self._unsubscribe.append(sub(events.ORDER_PLACED, self._on_order_open))

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for every scheduled re-dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, order_id: str) -> None:
        task = asyncio.create_task(self._dispatch_quietly(order_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_quietly(self, order_id: str) -> None:
        try:
            await self.dispatch(order_id)
        except (NoCandidates, Conflict, NotFound) as e:
            logger.debug("Background dispatch of %s: %s", order_id, e)

    # ── Core ───────────────────────────────────────────────

    @property
    def searching(self) -> frozenset[str]:
        return frozenset(self._searching)

    async def dispatch(self, order_id: str) -> Rider:
        """Offer ``order_id`` to the cheapest rider that hasn't declined it.

        Raises ``NoCandidates`` when nobody is reachable; the order stays in
        the searching set and is retried on rider changes.
        """
        order = self.ledger.get(order_id)
        if order.status != OrderStatus.PENDING or order.rider_id is not None:
            self._searching.discard(order_id)
            raise Conflict(f"Order {order_id} is no longer open ({order.status.value})")
        if order.pickup.location is None:
            raise NoCandidates(f"Order {order_id} has no pickup coordinates")

        exclude = order.declined_by | self._riders_with_offers(skip=order_id)
        while True:
            rider = await self.matching.find_best_rider(order.pickup.location, exclude=exclude)
            if rider is None:
                await self._mark_searching(order)
                raise NoCandidates(f"No available rider for order {order_id}; still searching")

            # hold() re-checks the order and the rider under the ledger lock
            try:
                held = self.ledger.hold(order_id, rider.id)
                break
            except Conflict:
                order = self.ledger.get(order_id)
                if order.status != OrderStatus.PENDING or order.rider_id is not None:
                    self._searching.discard(order_id)
                    raise
                # Another dispatch offered this rider a different order meanwhile
                exclude = exclude | {rider.id}
        self._searching.discard(order_id)
        logger.info("Order %s offered to rider %s", order_id, rider.id)
        await self.bus.emit(
            events.ORDER_OFFERED,
            order_id=held.id, rider_id=rider.id,
            customer_id=held.customer_id, price=held.price,
        )
        return rider

    def _riders_with_offers(self, skip: str) -> set[str]:
        return {
            o.held_by for o in self.ledger.unassigned_pending()
            if o.held_by is not None and o.id != skip
        }

    async def _mark_searching(self, order: Order) -> None:
        first_time = order.id not in self._searching
        self._searching.add(order.id)
        if first_time:
            await self.bus.emit(events.ORDER_SEARCHING, order_id=order.id, customer_id=order.customer_id)

    # ── Event handlers ─────────────────────────────────────

    async def _on_order_open(self, event: Event) -> None:
        self._schedule(event.payload["order_id"])

    async def _on_order_closed(self, event: Event) -> None:
        self._searching.discard(event.payload["order_id"])

    async def _on_rider_status(self, event: Event) -> None:
        new_status = event.payload["new_status"]
        if new_status == RiderStatus.AVAILABLE.value:
            self._retry_searching()
        elif new_status in (RiderStatus.OFFLINE.value, RiderStatus.BUSY.value):
            self._reoffer_held_by(event.payload["rider_id"], keep=event.payload.get("active_order_id"))

    async def _on_rider_moved(self, event: Event) -> None:
        if event.payload.get("status") == RiderStatus.AVAILABLE.value:
            self._retry_searching()

    def _retry_searching(self) -> None:
        for order_id in list(self._searching):
            self._schedule(order_id)

    def _reoffer_held_by(self, rider_id: str, keep: str | None = None) -> None:
        # ``keep`` is the order the rider is taking right now
        for order in self.ledger.unassigned_pending():
            if order.held_by == rider_id and order.id != keep:
                self.ledger.clear_hold(order.id, rider_id)
                self._schedule(order.id)
