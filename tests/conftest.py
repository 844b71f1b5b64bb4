"""Shared fixtures: an in-memory platform with a scripted distance provider."""

import asyncio

import pytest

from bodadispatch.errors import ProviderUnavailable
from bodadispatch.events import EventBus
from bodadispatch.models import Location, RiderStatus, RouteCost, Vehicle
from bodadispatch.services.lifecycle import LifecycleCoordinator
from bodadispatch.services.location_pipeline import LocationPipeline
from bodadispatch.services.maps import RouteCache, RoutingService, haversine_km
from bodadispatch.services.matching import MatchingEngine
from bodadispatch.services.order_ledger import OrderLedger
from bodadispatch.services.rider_registry import RiderRegistry

# Nairobi CBD pickup and a drop-off ~1.57 km away
PICKUP = Location(-1.2864, 36.8172)
DROPOFF = Location(-1.2964, 36.8272)


class FakeProvider:
    """Distance provider scripted by route origin.

    ``distances`` maps an origin ``(lat, lng)`` to a road distance in km;
    unknown origins get 1.3 × the great-circle distance. Origins in
    ``failing`` raise ``ProviderUnavailable``; origins in ``slow`` sleep first.
    """

    def __init__(self, distances=None, failing=(), slow=(), delay=1.0):
        self.distances = dict(distances or {})
        self.failing = set(failing)
        self.slow = set(slow)
        self.delay = delay
        self.calls = []

    async def route(self, waypoints, profile):
        origin = waypoints[0].as_tuple()
        self.calls.append((tuple(w.as_tuple() for w in waypoints), profile))
        if origin in self.failing:
            raise ProviderUnavailable("provider down")
        if origin in self.slow:
            await asyncio.sleep(self.delay)
        km = self.distances.get(origin)
        if km is None:
            km = round(haversine_km(waypoints[0], waypoints[-1]) * 1.3, 2)
        return RouteCost(distance_km=km, duration_min=round(km * 3, 1), path=list(waypoints), source="fake")


class FakeGeocoder:
    def __init__(self, places=None):
        self.places = dict(places or {})

    async def geocode(self, address):
        return self.places.get(address)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorded(bus):
    """Every event published on the bus, in order."""
    seen = []

    async def _record(event):
        seen.append(event)

    bus.subscribe("*", _record)
    return seen


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def routing(provider):
    return RoutingService(provider, RouteCache())


@pytest.fixture
def registry(bus):
    return RiderRegistry(bus)


@pytest.fixture
def ledger():
    return OrderLedger()


@pytest.fixture
def geocoder():
    return FakeGeocoder({
        "Kenyatta Avenue, Nairobi": PICKUP,
        "Moi Avenue, Nairobi": DROPOFF,
    })


@pytest.fixture
def coordinator(ledger, registry, routing, bus, geocoder):
    return LifecycleCoordinator(ledger, registry, routing, bus, geocoder)


@pytest.fixture
def matching(registry, routing):
    return MatchingEngine(registry, routing, timeout_sec=0.2)


@pytest.fixture
def pipeline(registry, ledger, routing, bus):
    return LocationPipeline(registry, ledger, routing, bus, watch_queue_size=4)


@pytest.fixture
def make_rider(registry):
    """Register a rider and optionally bring it online at a location."""

    async def _make(
        rider_id,
        lat=None,
        lng=None,
        status=RiderStatus.AVAILABLE,
        vehicle=Vehicle.MOTORCYCLE,
    ):
        await registry.register(f"Rider {rider_id}", "+254700000000", vehicle, rider_id=rider_id)
        if lat is not None:
            await registry.upsert_location(rider_id, lat, lng)
        if status != RiderStatus.OFFLINE:
            await registry.set_status(rider_id, status)
        return registry.get(rider_id)

    return _make
