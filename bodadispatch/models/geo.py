"""Geographic value types shared by riders, orders and routing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TravelProfile(str, Enum):
    DRIVING = "driving-car"
    CYCLING = "cycling-road"


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float

    def __post_init__(self):
        if not -90 <= self.lat <= 90:
            raise ValueError(f"latitude out of range: {self.lat}")
        if not -180 <= self.lng <= 180:
            raise ValueError(f"longitude out of range: {self.lng}")

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class RouteCost:
    """Distance/duration/path between waypoints for one travel profile."""

    distance_km: float
    duration_min: float
    path: list[Location] = field(default_factory=list)
    source: str = "openrouteservice"
