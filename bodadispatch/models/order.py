"""Order domain model — delivery requests with an append-only status history."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from .geo import Location


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Legal order transitions. Anything not listed here is rejected.
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def is_legal_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in TRANSITIONS[current]


@dataclass(frozen=True)
class StatusEntry:
    status: OrderStatus
    timestamp: datetime


@dataclass(frozen=True)
class Place:
    address: str
    location: Location | None = None


@dataclass
class Order:
    id: str
    customer_id: str
    pickup: Place
    dropoff: Place
    description: str = ""
    recipient_name: str | None = None
    recipient_phone: str | None = None
    shop_id: str | None = None  # set for shop pickups

    rider_id: str | None = None
    price: float | None = None
    distance_km: float | None = None
    duration_min: float | None = None

    status_history: list[StatusEntry] = field(default_factory=list)

    # Tentative offer to one rider; not part of the status history
    held_by: str | None = None
    declined_by: set[str] = field(default_factory=set)

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    @property
    def status(self) -> OrderStatus:
        return self.status_history[-1].status

    @property
    def updated_at(self) -> datetime:
        return self.status_history[-1].timestamp if self.status_history else self.created_at

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> Order:
        return replace(
            self,
            status_history=list(self.status_history),
            declined_by=set(self.declined_by),
        )
