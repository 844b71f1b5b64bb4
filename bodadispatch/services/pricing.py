"""
Pricing Engine — fares from the pickup→dropoff route cost.

  price = ceil(base_fare + distance_km × rate_per_km)

Fares are whole shillings. The route cost comes from the routing service,
so a provider outage prices on the great-circle estimate rather than
failing the order.
"""

import math
from dataclasses import dataclass

from bodadispatch.models import RouteCost


# ── Constants ──────────────────────────────────────────────

BASE_FARE = 100.0      # KES
RATE_PER_KM = 50.0     # KES per km
CURRENCY = "KES"


@dataclass
class PriceBreakdown:
    distance_km: float
    duration_min: float
    base_fare: float
    rate_per_km: float
    distance_cost: float
    total_cost: float
    route_source: str
    currency: str = CURRENCY


def calculate_price(
    distance_km: float,
    duration_min: float = 0.0,
    base_fare: float = BASE_FARE,
    rate_per_km: float = RATE_PER_KM,
    route_source: str = "openrouteservice",
) -> PriceBreakdown:
    """
    Calculate the fare for a trip.

    Args:
        distance_km: Route distance from pickup to drop-off
        duration_min: Estimated duration in minutes (reported, not charged)
        base_fare: Flat charge per order
        rate_per_km: Charge per route kilometre
        route_source: Where the distance came from (provider, cache, haversine)

    Returns:
        PriceBreakdown with the total rounded up to a whole shilling
    """
    if distance_km < 0:
        raise ValueError("distance_km must be non-negative")

    distance_cost = distance_km * rate_per_km
    total = math.ceil(round(base_fare + distance_cost, 6))

    return PriceBreakdown(
        distance_km=distance_km,
        duration_min=duration_min,
        base_fare=base_fare,
        rate_per_km=rate_per_km,
        distance_cost=round(distance_cost, 2),
        total_cost=float(total),
        route_source=route_source,
    )


def price_route(
    cost: RouteCost,
    base_fare: float = BASE_FARE,
    rate_per_km: float = RATE_PER_KM,
) -> PriceBreakdown:
    return calculate_price(
        distance_km=cost.distance_km,
        duration_min=cost.duration_min,
        base_fare=base_fare,
        rate_per_km=rate_per_km,
        route_source=cost.source,
    )
