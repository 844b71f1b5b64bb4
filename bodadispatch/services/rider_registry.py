"""
Rider Registry — current identity, status and location of every rider.

All mutation happens inside one lock with no awaits, then the change is
published on the event bus. Readers always get snapshot copies.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable

from bodadispatch import events
from bodadispatch.errors import Conflict, InvalidTransition, NotFound
from bodadispatch.events import EventBus
from bodadispatch.models import Location, Rider, RiderStatus, Vehicle

logger = logging.getLogger(__name__)


class RiderRegistry:
    def __init__(self, bus: EventBus | None = None):
        self._bus = bus or EventBus()
        self._riders: dict[str, Rider] = {}  # insertion order = registration order
        self._lock = threading.Lock()

    # ── Reads ──────────────────────────────────────────────

    def _require(self, rider_id: str) -> Rider:
        rider = self._riders.get(rider_id)
        if rider is None:
            raise NotFound(f"Rider {rider_id} not found")
        return rider

    def get(self, rider_id: str) -> Rider:
        with self._lock:
            return self._require(rider_id).snapshot()

    def exists(self, rider_id: str) -> bool:
        return rider_id in self._riders

    def list_all(self, status: RiderStatus | None = None) -> list[Rider]:
        with self._lock:
            return [
                r.snapshot() for r in self._riders.values()
                if status is None or r.status == status
            ]

    def list_available(self) -> list[Rider]:
        """Point-in-time copy of matchable riders, in registration order."""
        with self._lock:
            return [
                r.snapshot() for r in self._riders.values()
                if r.status == RiderStatus.AVAILABLE and r.location is not None
            ]

    # ── Writes ─────────────────────────────────────────────

    async def register(
        self,
        name: str,
        phone: str,
        vehicle: Vehicle = Vehicle.MOTORCYCLE,
        vehicle_reg: str | None = None,
        rider_id: str | None = None,
    ) -> Rider:
        rider_id = rider_id or f"rider-{uuid.uuid4().hex[:12]}"
        with self._lock:
            if rider_id in self._riders:
                raise Conflict(f"Rider {rider_id} already registered")
            rider = Rider(
                id=rider_id, name=name, phone=phone,
                vehicle=vehicle, vehicle_reg=vehicle_reg,
            )
            self._riders[rider_id] = rider
            snap = rider.snapshot()

        logger.info("Rider registered: id=%s vehicle=%s", rider_id, vehicle.value)
        await self._bus.emit(events.RIDER_REGISTERED, rider_id=rider_id)
        return snap

    async def upsert_location(
        self,
        rider_id: str,
        lat: float,
        lng: float,
        sequence: int | None = None,
    ) -> bool:
        """Overwrite a rider's location. Never touches status.

        Returns False when the report is a duplicate or older than the last
        accepted one; the registry is left unchanged in that case. Once a
        sequenced report has been applied, unsequenced ones cannot be ordered
        against it and are rejected.
        """
        location = Location(lat, lng)
        with self._lock:
            rider = self._require(rider_id)
            if rider.location_seq is not None:
                if sequence is None or sequence <= rider.location_seq:
                    return False
            if sequence is None and rider.location == location:
                return False
            rider.location = location
            if sequence is not None:
                rider.location_seq = sequence
            rider.location_updated_at = datetime.now(timezone.utc)
            rider.version += 1
            status = rider.status

        await self._bus.emit(
            events.RIDER_LOCATION_UPDATED,
            rider_id=rider_id, lat=lat, lng=lng, status=status.value,
        )
        return True

    async def set_status(self, rider_id: str, status: RiderStatus) -> Rider:
        with self._lock:
            rider = self._require(rider_id)
            old = rider.status
            if status != RiderStatus.OFFLINE:
                if not rider.is_active:
                    raise InvalidTransition(f"Rider {rider_id} is deactivated")
                if rider.location is None:
                    raise InvalidTransition(
                        f"Rider {rider_id} cannot go {status.value} without a known location"
                    )
            if status == RiderStatus.AVAILABLE and rider.active_order_id:
                raise InvalidTransition(
                    f"Rider {rider_id} holds order {rider.active_order_id}; resume as busy"
                )
            if status == RiderStatus.BUSY and not rider.active_order_id:
                raise InvalidTransition(f"Rider {rider_id} has no active order")
            if old == status:
                return rider.snapshot()
            rider.status = status
            rider.version += 1
            snap = rider.snapshot()

        await self._emit_status(snap, old)
        return snap

    async def claim(
        self,
        rider_id: str,
        order_id: str,
        commit: Callable[[], object] | None = None,
    ) -> Rider:
        """Atomically move an available rider to busy on ``order_id``.

        ``commit`` runs under the registry lock once the rider is known to be
        free. If it raises, the rider is left untouched and nothing is published.
        """
        with self._lock:
            rider = self._require(rider_id)
            if rider.status != RiderStatus.AVAILABLE or rider.active_order_id:
                raise Conflict(f"Rider {rider_id} is not available ({rider.status.value})")
            if commit is not None:
                commit()
            rider.status = RiderStatus.BUSY
            rider.active_order_id = order_id
            rider.version += 1
            snap = rider.snapshot()

        await self._emit_status(snap, RiderStatus.AVAILABLE)
        return snap

    async def release(self, rider_id: str, order_id: str) -> Rider:
        """Drop the assignment; busy riders return to available."""
        with self._lock:
            rider = self._require(rider_id)
            if rider.active_order_id != order_id:
                return rider.snapshot()
            old = rider.status
            rider.active_order_id = None
            if rider.status == RiderStatus.BUSY:
                rider.status = RiderStatus.AVAILABLE
            rider.version += 1
            snap = rider.snapshot()

        if snap.status != old:
            await self._emit_status(snap, old)
        return snap

    async def deactivate(self, rider_id: str) -> Rider:
        """Soft delete. History that references the rider stays valid."""
        with self._lock:
            rider = self._require(rider_id)
            if rider.active_order_id:
                raise Conflict(f"Rider {rider_id} holds active order {rider.active_order_id}")
            old = rider.status
            rider.is_active = False
            rider.status = RiderStatus.OFFLINE
            rider.version += 1
            snap = rider.snapshot()

        if old != RiderStatus.OFFLINE:
            await self._emit_status(snap, old)
        await self._bus.emit(events.RIDER_DEACTIVATED, rider_id=rider_id)
        return snap

    async def _emit_status(self, rider: Rider, old: RiderStatus) -> None:
        logger.info("Rider %s status %s → %s", rider.id, old.value, rider.status.value)
        await self._bus.emit(
            events.RIDER_STATUS_CHANGED,
            rider_id=rider.id,
            old_status=old.value,
            new_status=rider.status.value,
            active_order_id=rider.active_order_id,
        )
