"""
Order Lifecycle Coordinator — the only writer of order state.

    pending → accepted → in-progress → completed
       └──────────┴──→ cancelled

Transitions are appended to the ledger under its lock, then announced on
the event bus. State-machine violations and lost races are raised to the
caller; nothing is coerced.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from bodadispatch import events
from bodadispatch.errors import InvalidTransition, UnresolvableLocation
from bodadispatch.events import EventBus
from bodadispatch.models import Location, Order, OrderStatus, Place, TravelProfile
from bodadispatch.services.maps import RoutingService
from bodadispatch.services.order_ledger import OrderLedger
from bodadispatch.services.pricing import BASE_FARE, RATE_PER_KM, PriceBreakdown, price_route
from bodadispatch.services.rider_registry import RiderRegistry

logger = logging.getLogger(__name__)

ADVANCE_TARGETS = (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED)

EVENT_FOR_STATUS = {
    OrderStatus.ACCEPTED: events.ORDER_ACCEPTED,
    OrderStatus.IN_PROGRESS: events.ORDER_IN_PROGRESS,
    OrderStatus.COMPLETED: events.ORDER_COMPLETED,
    OrderStatus.CANCELLED: events.ORDER_CANCELLED,
}


class Geocoder(Protocol):
    async def geocode(self, address: str) -> Location | None: ...


def order_payload(order: Order) -> dict:
    return {
        "order_id": order.id,
        "customer_id": order.customer_id,
        "rider_id": order.rider_id,
        "status": order.status.value,
        "price": order.price,
        "version": order.version,
    }


class LifecycleCoordinator:
    def __init__(
        self,
        ledger: OrderLedger,
        registry: RiderRegistry,
        routing: RoutingService,
        bus: EventBus,
        geocoder: Geocoder | None = None,
        base_fare: float = BASE_FARE,
        rate_per_km: float = RATE_PER_KM,
        pricing_profile: TravelProfile = TravelProfile.CYCLING,
    ):
        self.ledger = ledger
        self.registry = registry
        self.routing = routing
        self.bus = bus
        self.geocoder = geocoder
        self.base_fare = base_fare
        self.rate_per_km = rate_per_km
        self.pricing_profile = pricing_profile

    # ── Placement ──────────────────────────────────────────

    async def _resolve(self, place: Place) -> Place:
        if place.location is not None:
            return place
        location = await self.geocoder.geocode(place.address) if self.geocoder else None
        if location is None:
            raise UnresolvableLocation(f"Could not find a location for {place.address!r}")
        return Place(address=place.address, location=location)

    async def estimate(self, pickup: Place, dropoff: Place) -> PriceBreakdown:
        """Price a trip without creating an order."""
        pickup = await self._resolve(pickup)
        dropoff = await self._resolve(dropoff)
        cost = await self.routing.route([pickup.location, dropoff.location], self.pricing_profile)
        return price_route(cost, self.base_fare, self.rate_per_km)

    async def place_order(
        self,
        customer_id: str,
        pickup: Place,
        dropoff: Place,
        description: str = "",
        recipient_name: str | None = None,
        recipient_phone: str | None = None,
        shop_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        if idempotency_key:
            existing = self.ledger.find_by_key(idempotency_key)
            if existing is not None:
                return existing

        pickup = await self._resolve(pickup)
        dropoff = await self._resolve(dropoff)
        cost = await self.routing.route([pickup.location, dropoff.location], self.pricing_profile)
        price = price_route(cost, self.base_fare, self.rate_per_km)

        order_id = f"order-{uuid.uuid4().hex[:12]}"
        order = self.ledger.add(Order(
            id=order_id,
            customer_id=customer_id,
            pickup=pickup,
            dropoff=dropoff,
            description=description,
            recipient_name=recipient_name,
            recipient_phone=recipient_phone,
            shop_id=shop_id,
            price=price.total_cost,
            distance_km=price.distance_km,
            duration_min=price.duration_min,
        ), idempotency_key=idempotency_key)
        if order.id != order_id:
            # A concurrent retry with the same key got there first
            return order

        logger.info(
            "Order placed: id=%s customer=%s price=%.0f (%.2f km via %s)",
            order.id, customer_id, order.price, price.distance_km, price.route_source,
        )
        await self.bus.emit(events.ORDER_PLACED, **order_payload(order))
        return order

    async def reprice(self, order_id: str, price: float) -> Order:
        order = self.ledger.set_price(order_id, price)
        await self.bus.emit(events.ORDER_REPRICED, **order_payload(order))
        return order

    # ── Transitions ────────────────────────────────────────

    async def accept(
        self,
        order_id: str,
        rider_id: str,
        expected_version: int | None = None,
    ) -> Order:
        """Assign ``rider_id``. Exactly one of several racing accepts wins."""
        self.ledger.get(order_id)
        self.registry.get(rider_id)

        order: Order | None = None

        def commit() -> None:
            nonlocal order
            order = self.ledger.assign(order_id, rider_id, expected_version)

        # The rider only turns busy if the assignment commits
        await self.registry.claim(rider_id, order_id, commit=commit)

        logger.info("Order %s accepted by rider %s", order_id, rider_id)
        await self.bus.emit(events.ORDER_ACCEPTED, **order_payload(order))
        return order

    async def decline(self, order_id: str, rider_id: str) -> Order:
        """Exclude ``rider_id`` from this order and return it to matching."""
        self.registry.get(rider_id)
        order = self.ledger.record_decline(order_id, rider_id)
        logger.info("Order %s declined by rider %s", order_id, rider_id)
        await self.bus.emit(events.ORDER_DECLINED, declined_by=rider_id, **order_payload(order))
        return order

    async def advance(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_version: int | None = None,
    ) -> Order:
        if new_status not in ADVANCE_TARGETS:
            raise InvalidTransition(f"advance() only moves to in-progress or completed, not {new_status.value}")
        return await self._transition(order_id, new_status, expected_version)

    async def cancel(self, order_id: str, expected_version: int | None = None) -> Order:
        return await self._transition(order_id, OrderStatus.CANCELLED, expected_version)

    async def _transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_version: int | None,
    ) -> Order:
        order = self.ledger.transition(order_id, new_status, expected_version)
        if order.is_terminal and order.rider_id:
            await self.registry.release(order.rider_id, order.id)

        logger.info("Order %s → %s", order_id, new_status.value)
        await self.bus.emit(EVENT_FOR_STATUS[new_status], **order_payload(order))
        return order

    # ── Reads ──────────────────────────────────────────────

    def get_order(self, order_id: str) -> Order:
        return self.ledger.get(order_id)

    def list_orders(
        self,
        status: OrderStatus | None = None,
        customer_id: str | None = None,
        rider_id: str | None = None,
        shop_id: str | None = None,
    ) -> list[Order]:
        return self.ledger.list_orders(
            status=status, customer_id=customer_id, rider_id=rider_id, shop_id=shop_id,
        )

    def available_orders(self) -> list[Order]:
        return self.ledger.unassigned_pending()
