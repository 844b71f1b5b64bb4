from bodadispatch.models.geo import Location, RouteCost, TravelProfile
from bodadispatch.models.rider import Rider, RiderStatus, Vehicle, VEHICLE_PROFILE
from bodadispatch.models.order import (
    Order, OrderStatus, Place, StatusEntry,
    TERMINAL_STATUSES, TRANSITIONS, is_legal_transition,
)

__all__ = [
    "Location", "RouteCost", "TravelProfile",
    "Rider", "RiderStatus", "Vehicle", "VEHICLE_PROFILE",
    "Order", "OrderStatus", "Place", "StatusEntry",
    "TERMINAL_STATUSES", "TRANSITIONS", "is_legal_transition",
]
