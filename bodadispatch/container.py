"""
Platform wiring — builds the explicit instances the server owns.

One ``Platform`` per process, stored on ``app.state.platform`` and handed to
the routers through ``get_platform``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from bodadispatch.config import Settings, settings as default_settings
from bodadispatch.db.database import create_tables, make_engine, make_session_factory
from bodadispatch.events import EventBus
from bodadispatch.services.dispatcher import Dispatcher
from bodadispatch.services.journal import OrderJournal
from bodadispatch.services.lifecycle import Geocoder, LifecycleCoordinator
from bodadispatch.services.location_pipeline import LocationPipeline
from bodadispatch.services.maps import (
    DistanceProvider, OpenRouteServiceGeocoder, OpenRouteServiceProvider,
    RedisRouteCache, RouteCache, RoutingService,
)
from bodadispatch.services.matching import FallbackPolicy, MatchingEngine
from bodadispatch.services.notifier import WebhookNotifier
from bodadispatch.services.order_ledger import OrderLedger
from bodadispatch.services.rider_registry import RiderRegistry

logger = logging.getLogger(__name__)


@dataclass
class Platform:
    settings: Settings
    bus: EventBus
    registry: RiderRegistry
    ledger: OrderLedger
    routing: RoutingService
    matching: MatchingEngine
    coordinator: LifecycleCoordinator
    pipeline: LocationPipeline
    dispatcher: Dispatcher
    notifier: WebhookNotifier
    journal: OrderJournal | None = None
    engine: AsyncEngine | None = None
    closeables: list = field(default_factory=list)

    async def start(self) -> None:
        if self.engine is not None:
            await create_tables(self.engine)
        if self.journal is not None:
            self.journal.start(self.bus)
        self.notifier.start(self.bus)
        self.dispatcher.start()
        logger.info(
            "Platform started (auto_dispatch=%s, matching=%s, journal=%s, notifier=%s)",
            self.dispatcher.auto_dispatch, self.matching.policy.value,
            self.journal is not None, self.notifier.enabled,
        )

    async def aclose(self) -> None:
        await self.dispatcher.stop()
        if self.journal is not None:
            self.journal.stop()
        await self.notifier.aclose()
        for resource in self.closeables:
            await resource.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_platform(
    settings: Settings = default_settings,
    provider: DistanceProvider | None = None,
    geocoder: Geocoder | None = None,
    notifier: WebhookNotifier | None = None,
) -> Platform:
    """Wire every component from settings. Pass ``provider``/``geocoder`` to swap the map backend."""
    closeables = []
    if provider is None:
        provider = OpenRouteServiceProvider(
            settings.ORS_API_KEY, settings.ORS_BASE_URL, settings.ROUTING_TIMEOUT_SEC,
        )
        closeables.append(provider)
    if geocoder is None:
        geocoder = OpenRouteServiceGeocoder(
            settings.ORS_API_KEY, settings.ORS_BASE_URL,
            settings.GEOCODE_COUNTRY, settings.ROUTING_TIMEOUT_SEC,
        )
        closeables.append(geocoder)

    if settings.REDIS_URL:
        cache = RedisRouteCache.from_url(settings.REDIS_URL, settings.ROUTE_CACHE_TTL_SEC)
        closeables.append(cache)
    else:
        cache = RouteCache(settings.ROUTE_CACHE_SIZE, settings.ROUTE_CACHE_TTL_SEC)

    bus = EventBus()
    registry = RiderRegistry(bus)
    ledger = OrderLedger()
    routing = RoutingService(provider, cache, settings.FALLBACK_SPEED_KMH)
    matching = MatchingEngine(
        registry, routing,
        policy=FallbackPolicy(settings.MATCHING_FALLBACK.lower()),
        timeout_sec=settings.ROUTING_TIMEOUT_SEC,
    )
    coordinator = LifecycleCoordinator(
        ledger, registry, routing, bus, geocoder,
        base_fare=settings.BASE_FARE, rate_per_km=settings.RATE_PER_KM,
    )
    pipeline = LocationPipeline(registry, ledger, routing, bus, settings.WATCH_QUEUE_SIZE)
    dispatcher = Dispatcher(ledger, matching, bus, auto_dispatch=settings.AUTO_DISPATCH)

    engine = journal = None
    if settings.DATABASE_URL:
        engine = make_engine(settings.DATABASE_URL)
        journal = OrderJournal(make_session_factory(engine), ledger)

    return Platform(
        settings=settings,
        bus=bus,
        registry=registry,
        ledger=ledger,
        routing=routing,
        matching=matching,
        coordinator=coordinator,
        pipeline=pipeline,
        dispatcher=dispatcher,
        notifier=notifier or WebhookNotifier(settings.NOTIFY_WEBHOOK_URL),
        journal=journal,
        engine=engine,
        closeables=closeables,
    )


def get_platform(request: Request) -> Platform:
    """FastAPI dependency for the process-wide platform."""
    return request.app.state.platform
