"""
Order Ledger — append-only status history plus mutable assignment fields.

Every write runs under one lock and checks an optional ``expected_version``
so the caller can commit against the exact state it read. A version
mismatch means another writer got there first and surfaces as ``Conflict``.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

from bodadispatch.errors import Conflict, InvalidTransition, NotFound
from bodadispatch.models import (
    Order, OrderStatus, StatusEntry, TERMINAL_STATUSES, is_legal_transition,
)


class OrderLedger:
    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._by_key: dict[str, str] = {}  # idempotency key → order id
        self._lock = threading.Lock()

    # ── Reads ──────────────────────────────────────────────

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def get(self, order_id: str) -> Order:
        with self._lock:
            return self._require(order_id).snapshot()

    def list_orders(
        self,
        status: OrderStatus | None = None,
        customer_id: str | None = None,
        rider_id: str | None = None,
        shop_id: str | None = None,
    ) -> list[Order]:
        with self._lock:
            return [
                o.snapshot() for o in self._orders.values()
                if (status is None or o.status == status)
                and (customer_id is None or o.customer_id == customer_id)
                and (rider_id is None or o.rider_id == rider_id)
                and (shop_id is None or o.shop_id == shop_id)
            ]

    def unassigned_pending(self) -> list[Order]:
        with self._lock:
            return [
                o.snapshot() for o in self._orders.values()
                if o.status == OrderStatus.PENDING and o.rider_id is None
            ]

    def find_by_key(self, idempotency_key: str) -> Order | None:
        with self._lock:
            order_id = self._by_key.get(idempotency_key)
            return self._orders[order_id].snapshot() if order_id else None

    def __len__(self) -> int:
        return len(self._orders)

    # ── Writes ─────────────────────────────────────────────

    def _check_version(self, order: Order, expected_version: int | None) -> None:
        if expected_version is not None and order.version != expected_version:
            raise Conflict(
                f"Order {order.id} changed concurrently "
                f"(expected v{expected_version}, found v{order.version})"
            )

    def _append(self, order: Order, status: OrderStatus) -> None:
        order.status_history.append(StatusEntry(status, datetime.now(timezone.utc)))
        order.version += 1

    def add(self, order: Order, idempotency_key: str | None = None) -> Order:
        """Store a new order with its initial ``pending`` entry.

        If ``idempotency_key`` was already used, nothing is stored and the
        order created under that key is returned instead.
        """
        with self._lock:
            if idempotency_key and idempotency_key in self._by_key:
                return self._orders[self._by_key[idempotency_key]].snapshot()
            if order.id in self._orders:
                raise Conflict(f"Order {order.id} already exists")
            if order.status_history:
                raise InvalidTransition("New orders must start with an empty history")
            self._append(order, OrderStatus.PENDING)
            self._orders[order.id] = order
            if idempotency_key:
                self._by_key[idempotency_key] = order.id
            return order.snapshot()

    def assign(self, order_id: str, rider_id: str, expected_version: int | None = None) -> Order:
        """Append ``accepted`` and set the rider; this is the single commit point for assignment."""
        with self._lock:
            order = self._require(order_id)
            self._check_version(order, expected_version)
            if order.status != OrderStatus.PENDING:
                raise Conflict(f"Order {order_id} is {order.status.value}, not pending")
            if order.rider_id is not None:
                raise Conflict(f"Order {order_id} already assigned to {order.rider_id}")
            order.rider_id = rider_id
            order.held_by = None
            self._append(order, OrderStatus.ACCEPTED)
            return order.snapshot()

    def transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_version: int | None = None,
    ) -> Order:
        """Append a non-assignment status (in-progress, completed, cancelled)."""
        if new_status in (OrderStatus.PENDING, OrderStatus.ACCEPTED):
            raise InvalidTransition(f"Use assign() to move an order to {new_status.value}")
        with self._lock:
            order = self._require(order_id)
            self._check_version(order, expected_version)
            current = order.status
            if current in TERMINAL_STATUSES:
                raise InvalidTransition(f"Order {order_id} is already {current.value}")
            if not is_legal_transition(current, new_status):
                raise InvalidTransition(
                    f"Order {order_id} cannot go from {current.value} to {new_status.value}"
                )
            order.held_by = None
            self._append(order, new_status)
            return order.snapshot()

    def hold(self, order_id: str, rider_id: str, expected_version: int | None = None) -> Order:
        """Tentatively offer a pending order to one rider.

        A rider holds at most one open offer at a time.
        """
        with self._lock:
            order = self._require(order_id)
            self._check_version(order, expected_version)
            if order.status != OrderStatus.PENDING or order.rider_id is not None:
                raise Conflict(f"Order {order_id} is no longer open")
            if rider_id in order.declined_by:
                raise Conflict(f"Rider {rider_id} already declined order {order_id}")
            for other in self._orders.values():
                if (
                    other.id != order_id and other.held_by == rider_id
                    and other.status == OrderStatus.PENDING and other.rider_id is None
                ):
                    raise Conflict(f"Rider {rider_id} already holds an offer for order {other.id}")
            order.held_by = rider_id
            order.version += 1
            return order.snapshot()

    def clear_hold(self, order_id: str, rider_id: str | None = None) -> Order:
        """Drop the hold; with ``rider_id`` only if that rider holds it."""
        with self._lock:
            order = self._require(order_id)
            if order.held_by is not None and rider_id in (None, order.held_by):
                order.held_by = None
                order.version += 1
            return order.snapshot()

    def record_decline(self, order_id: str, rider_id: str) -> Order:
        with self._lock:
            order = self._require(order_id)
            if order.status != OrderStatus.PENDING or order.rider_id is not None:
                raise InvalidTransition(
                    f"Order {order_id} is {order.status.value}; only pending orders can be declined"
                )
            order.declined_by.add(rider_id)
            if order.held_by == rider_id:
                order.held_by = None
            order.version += 1
            return order.snapshot()

    def set_price(
        self,
        order_id: str,
        price: float,
        distance_km: float | None = None,
        duration_min: float | None = None,
    ) -> Order:
        with self._lock:
            order = self._require(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidTransition(
                    f"Order {order_id} is {order.status.value}; price is fixed after confirmation"
                )
            order.price = price
            if distance_km is not None:
                order.distance_km = distance_km
            if duration_min is not None:
                order.duration_min = duration_min
            order.version += 1
            return order.snapshot()
