"""
Order Journal — durable history of order transitions.

Subscribes to the event bus and mirrors each order change into the
``orders`` / ``order_status_entries`` tables. The in-memory ledger stays
authoritative: a failed write is logged and the transition stands.
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bodadispatch import events
from bodadispatch.errors import NotFound
from bodadispatch.events import Event, EventBus
from bodadispatch.models import Order
from bodadispatch.models.records import OrderRecord, OrderStatusRecord
from bodadispatch.services.order_ledger import OrderLedger

logger = logging.getLogger(__name__)

# Events that append a status entry
STATUS_EVENTS = frozenset({
    events.ORDER_PLACED,
    events.ORDER_ACCEPTED,
    events.ORDER_IN_PROGRESS,
    events.ORDER_COMPLETED,
    events.ORDER_CANCELLED,
})
JOURNALED_EVENTS = STATUS_EVENTS | {events.ORDER_REPRICED}


def _apply(record: OrderRecord, order: Order, status: str) -> None:
    record.customer_id = order.customer_id
    record.rider_id = order.rider_id
    record.pickup_address = order.pickup.address
    record.pickup_lat = order.pickup.location.lat if order.pickup.location else None
    record.pickup_lng = order.pickup.location.lng if order.pickup.location else None
    record.dropoff_address = order.dropoff.address
    record.dropoff_lat = order.dropoff.location.lat if order.dropoff.location else None
    record.dropoff_lng = order.dropoff.location.lng if order.dropoff.location else None
    record.description = order.description
    record.recipient_name = order.recipient_name
    record.recipient_phone = order.recipient_phone
    record.shop_id = order.shop_id
    record.distance_km = order.distance_km
    record.duration_min = order.duration_min
    record.price = order.price
    record.status = status
    record.version = order.version
    record.created_at = order.created_at
    record.updated_at = order.updated_at


class OrderJournal:
    def __init__(self, session_factory: Callable[[], AsyncSession], ledger: OrderLedger):
        self._session_factory = session_factory
        self.ledger = ledger
        self._unsubscribe: Callable[[], None] | None = None

    def start(self, bus: EventBus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = bus.subscribe("order.*", self.record)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def record(self, event: Event) -> bool:
        """Write one order event. Returns False when nothing was written."""
        if event.name not in JOURNALED_EVENTS:
            return False
        order_id = event.payload["order_id"]
        # The event carries the status at publish time; the ledger may have moved on
        status = event.payload["status"]
        try:
            order = self.ledger.get(order_id)
        except NotFound:
            logger.warning("Journal: order %s vanished from the ledger", order_id)
            return False

        try:
            async with self._session_factory() as session:
                record = await session.get(OrderRecord, order_id)
                if record is None:
                    record = OrderRecord(id=order_id)
                    session.add(record)
                _apply(record, order, status)
                if event.name in STATUS_EVENTS:
                    session.add(OrderStatusRecord(
                        order_id=order_id,
                        status=status,
                        rider_id=event.payload.get("rider_id"),
                        created_at=event.occurred_at,
                    ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Journal write failed: order=%s event=%s error=%s", order_id, event.name, e)
            return False

        logger.debug("Journaled %s for order %s", event.name, order_id)
        return True
