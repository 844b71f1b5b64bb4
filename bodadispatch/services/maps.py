"""
OpenRouteService Maps Service — routing and geocoding with caching.

Strategy:
  1. Route cost cache keyed by profile + waypoint set (Redis or in-process)
  2. OpenRouteService directions for real road distance/duration/path
  3. Great-circle fallback when the provider is down or times out
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from collections import OrderedDict
from typing import Protocol, Sequence

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bodadispatch.errors import ProviderUnavailable
from bodadispatch.models import Location, RouteCost, TravelProfile

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
MIN_FALLBACK_DURATION_MIN = 5


# ── Great-circle Fallback ──────────────────────────────────

def haversine_km(a: Location, b: Location) -> float:
    """Great-circle distance between two points in km."""
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.lat))
        * math.cos(math.radians(b.lat))
        * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def estimate_duration(distance_km: float, avg_speed_kmh: float = 40.0) -> float:
    """Estimate duration in minutes at an assumed average speed (5 min floor)."""
    return float(max(MIN_FALLBACK_DURATION_MIN, round(distance_km / avg_speed_kmh * 60)))


def great_circle_route(waypoints: Sequence[Location], avg_speed_kmh: float = 40.0) -> RouteCost:
    """Straight-line route cost through every waypoint in order."""
    distance = sum(haversine_km(a, b) for a, b in zip(waypoints, waypoints[1:]))
    return RouteCost(
        distance_km=round(distance, 2),
        duration_min=estimate_duration(distance, avg_speed_kmh),
        path=list(waypoints),
        source="haversine",
    )


# ── Provider ───────────────────────────────────────────────

class DistanceProvider(Protocol):
    async def route(self, waypoints: Sequence[Location], profile: TravelProfile) -> RouteCost:
        """Return road route cost, or raise ProviderUnavailable."""
        ...


class OpenRouteServiceProvider:
    """Directions client for ``POST /v2/directions/{profile}`` (GeoJSON)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openrouteservice.org",
        timeout: float = 5.0,
        http: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def route(self, waypoints: Sequence[Location], profile: TravelProfile) -> RouteCost:
        if not self.api_key:
            raise ProviderUnavailable("ORS_API_KEY not configured")

        # ORS expects [lng, lat]
        body = {"coordinates": [[w.lng, w.lat] for w in waypoints]}
        try:
            resp = await self._http.post(
                f"{self.base_url}/v2/directions/{profile.value}/geojson",
                json=body,
                headers={
                    "Authorization": self.api_key,
                    "Accept": "application/json, application/geo+json",
                },
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(f"routing timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"routing request failed: {e}") from e

        if resp.status_code != 200:
            raise ProviderUnavailable(f"routing HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            return _parse_directions(resp.json())
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderUnavailable(f"malformed routing response: {e}") from e


def _parse_directions(data: dict) -> RouteCost:
    feature = data["features"][0]
    segment = feature["properties"]["segments"][0]
    coords = (feature.get("geometry") or {}).get("coordinates") or []
    return RouteCost(
        distance_km=round(float(segment["distance"]) / 1000.0, 2),
        duration_min=round(float(segment["duration"]) / 60.0, 1),
        path=[Location(lat=c[1], lng=c[0]) for c in coords],
        source="openrouteservice",
    )


# ── Route Cost Cache ───────────────────────────────────────

def route_cache_key(waypoints: Sequence[Location], profile: TravelProfile) -> str:
    """Stable key for a waypoint set, coordinates rounded to ~1 m."""
    raw = "|".join(f"{w.lat:.5f},{w.lng:.5f}" for w in waypoints)
    digest = hashlib.sha256(f"{profile.value}:{raw}".encode()).hexdigest()[:16]
    return f"route:{profile.value}:{digest}"


def _encode(cost: RouteCost) -> dict[str, str]:
    return {
        "distance_km": str(cost.distance_km),
        "duration_min": str(cost.duration_min),
        "path": json.dumps([[p.lat, p.lng] for p in cost.path]),
    }


def _decode(raw: dict) -> RouteCost:
    return RouteCost(
        distance_km=float(raw["distance_km"]),
        duration_min=float(raw["duration_min"]),
        path=[Location(lat, lng) for lat, lng in json.loads(raw.get("path") or "[]")],
        source="cache",
    )


class RouteCache:
    """Bounded in-process LRU with TTL."""

    def __init__(self, maxsize: int = 2048, ttl_sec: int = 2 * 3600):
        self.maxsize = maxsize
        self.ttl_sec = ttl_sec
        self._data: OrderedDict[str, tuple[float, dict]] = OrderedDict()

    async def get(self, key: str) -> RouteCost | None:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if expires_at < time.monotonic():
            del self._data[key]
            return None
        self._data.move_to_end(key)
        return _decode(raw)

    async def set(self, key: str, cost: RouteCost) -> None:
        self._data[key] = (time.monotonic() + self.ttl_sec, _encode(cost))
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def __len__(self) -> int:
        return len(self._data)


class RedisRouteCache:
    """Route cost cache shared across processes (hash + TTL)."""

    def __init__(self, redis: aioredis.Redis, ttl_sec: int = 2 * 3600):
        self._redis = redis
        self.ttl_sec = ttl_sec

    @classmethod
    def from_url(cls, url: str, ttl_sec: int = 2 * 3600) -> RedisRouteCache:
        return cls(aioredis.from_url(url, decode_responses=True), ttl_sec)

    async def get(self, key: str) -> RouteCost | None:
        try:
            cached = await self._redis.hgetall(key)
        except RedisError as e:
            logger.warning("Route cache read failed: %s", e)
            return None
        if cached and "distance_km" in cached:
            return _decode(cached)
        return None

    async def set(self, key: str, cost: RouteCost) -> None:
        try:
            await self._redis.hset(key, mapping=_encode(cost))
            await self._redis.expire(key, self.ttl_sec)
        except RedisError as e:
            logger.warning("Route cache write failed: %s", e)

    async def aclose(self) -> None:
        await self._redis.aclose()


# ── Routing Service ────────────────────────────────────────

class RoutingService:
    """Cached route costs with great-circle fallback.

    ``route(..., fallback=False)`` lets callers that prefer to exclude a
    failed lookup (the strict matching policy) see ``ProviderUnavailable``
    instead of an estimate. Fallback results are never cached, so the
    provider is retried once it recovers.
    """

    def __init__(
        self,
        provider: DistanceProvider,
        cache: RouteCache | RedisRouteCache | None = None,
        fallback_speed_kmh: float = 40.0,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else RouteCache()
        self.fallback_speed_kmh = fallback_speed_kmh

    async def route(
        self,
        waypoints: Sequence[Location],
        profile: TravelProfile = TravelProfile.DRIVING,
        *,
        fallback: bool = True,
    ) -> RouteCost:
        if len(waypoints) < 2:
            return RouteCost(distance_km=0.0, duration_min=0.0, path=list(waypoints), source="trivial")

        key = route_cache_key(waypoints, profile)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        try:
            cost = await self.provider.route(waypoints, profile)
        except ProviderUnavailable as e:
            if not fallback:
                raise
            logger.warning("Routing provider unavailable, using great-circle estimate: %s", e)
            return great_circle_route(waypoints, self.fallback_speed_kmh)

        await self.cache.set(key, cost)
        return cost


# ── Geocoding ──────────────────────────────────────────────

def parse_lat_lng(text: str) -> Location | None:
    """Parse a 'lat,lng' string (e.g. a shared location pin)."""
    if not text or "," not in text:
        return None
    parts = text.strip().split(",", 1)
    try:
        return Location(float(parts[0].strip()), float(parts[1].strip()))
    except ValueError:
        return None


class OpenRouteServiceGeocoder:
    """``GET /geocode/search`` restricted to one country."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openrouteservice.org",
        country: str = "KE",
        timeout: float = 5.0,
        http: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.country = country
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def geocode(self, address: str) -> Location | None:
        pin = parse_lat_lng(address)
        if pin is not None:
            return pin
        if not self.api_key:
            logger.warning("ORS_API_KEY not configured — cannot geocode %r", address[:60])
            return None

        try:
            resp = await self._http.get(
                f"{self.base_url}/geocode/search",
                params={
                    "api_key": self.api_key,
                    "text": address,
                    "boundary.country": self.country,
                    "size": 1,
                },
            )
            if resp.status_code != 200:
                logger.warning("Geocoding HTTP %s for %r", resp.status_code, address[:60])
                return None
            features = resp.json().get("features") or []
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Geocoding error for %r: %s", address[:60], e)
            return None

        if not features:
            logger.info("No geocoding results for %r", address[:60])
            return None
        try:
            lng, lat = features[0]["geometry"]["coordinates"][:2]
            return Location(float(lat), float(lng))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("Malformed geocoding result for %r: %s", address[:60], e)
            return None
