"""
Matching Engine — pick the best available rider for a pickup point.

The search is read-only: it snapshots the registry, fans out one route-cost
lookup per candidate and returns the cheapest. Nothing is reserved. Two
concurrent searches may pick the same rider; the assignment step in the
lifecycle coordinator settles that race.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from bodadispatch.errors import ProviderUnavailable
from bodadispatch.models import Location, Rider, RouteCost
from bodadispatch.services.maps import RoutingService, great_circle_route
from bodadispatch.services.rider_registry import RiderRegistry

logger = logging.getLogger(__name__)


class FallbackPolicy(str, Enum):
    STRICT = "strict"     # failed or timed-out lookups drop the candidate
    LENIENT = "lenient"   # failed or timed-out lookups use a great-circle estimate


@dataclass(frozen=True)
class Candidate:
    rider: Rider
    cost: RouteCost
    rank: int  # registration order, the final tie-breaker

    @property
    def sort_key(self) -> tuple[float, float, int]:
        return (self.cost.distance_km, self.cost.duration_min, self.rank)


class MatchingEngine:
    def __init__(
        self,
        registry: RiderRegistry,
        routing: RoutingService,
        policy: FallbackPolicy = FallbackPolicy.STRICT,
        timeout_sec: float = 5.0,
    ):
        self.registry = registry
        self.routing = routing
        self.policy = policy
        self.timeout_sec = timeout_sec

    async def _cost_for(self, rider: Rider, pickup: Location) -> RouteCost | None:
        waypoints = [rider.location, pickup]
        try:
            return await asyncio.wait_for(
                self.routing.route(waypoints, rider.profile, fallback=False),
                timeout=self.timeout_sec,
            )
        except (ProviderUnavailable, asyncio.TimeoutError) as e:
            if self.policy == FallbackPolicy.LENIENT:
                logger.info("Route lookup failed for rider %s, ranking by great-circle: %s", rider.id, e)
                return great_circle_route(waypoints, self.routing.fallback_speed_kmh)
            logger.info("Route lookup failed for rider %s, excluding candidate: %s", rider.id, e)
            return None

    async def rank_candidates(
        self,
        pickup: Location,
        exclude: Iterable[str] = (),
    ) -> list[Candidate]:
        """All reachable candidates, cheapest first."""
        excluded = set(exclude)
        riders = [r for r in self.registry.list_available() if r.id not in excluded]
        if not riders:
            return []

        costs = await asyncio.gather(*(self._cost_for(r, pickup) for r in riders))
        candidates = [
            Candidate(rider=r, cost=c, rank=i)
            for i, (r, c) in enumerate(zip(riders, costs))
            if c is not None
        ]
        candidates.sort(key=lambda c: c.sort_key)
        return candidates

    async def find_best_rider(
        self,
        pickup: Location,
        exclude: Iterable[str] = (),
    ) -> Rider | None:
        candidates = await self.rank_candidates(pickup, exclude)
        if not candidates:
            logger.info("No candidates for pickup %.5f,%.5f", pickup.lat, pickup.lng)
            return None
        best = candidates[0]
        logger.info(
            "Best rider %s for pickup %.5f,%.5f (%.2f km, %.0f min, %d candidates)",
            best.rider.id, pickup.lat, pickup.lng,
            best.cost.distance_km, best.cost.duration_min, len(candidates),
        )
        return best.rider
