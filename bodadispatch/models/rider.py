"""Rider domain model — couriers that can hold one active order."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from .geo import Location, TravelProfile


class RiderStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Vehicle(str, Enum):
    MOTORCYCLE = "motorcycle"
    BICYCLE = "bicycle"
    CAR = "car"


VEHICLE_PROFILE = {
    Vehicle.MOTORCYCLE: TravelProfile.CYCLING,
    Vehicle.BICYCLE: TravelProfile.CYCLING,
    Vehicle.CAR: TravelProfile.DRIVING,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Rider:
    id: str
    name: str
    phone: str
    vehicle: Vehicle = Vehicle.MOTORCYCLE
    vehicle_reg: str | None = None
    status: RiderStatus = RiderStatus.OFFLINE
    location: Location | None = None
    active_order_id: str | None = None

    # Highest accepted location report sequence
    location_seq: int | None = None
    location_updated_at: datetime | None = None

    is_active: bool = True
    registered_at: datetime = field(default_factory=_utcnow)
    version: int = 0

    @property
    def profile(self) -> TravelProfile:
        return VEHICLE_PROFILE[self.vehicle]

    def snapshot(self) -> Rider:
        return replace(self)
