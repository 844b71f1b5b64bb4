"""Tests for the location update pipeline, live-tracking watches and reporting sessions."""

import asyncio

import pytest

from bodadispatch import events
from bodadispatch.errors import NotFound
from bodadispatch.models import Location, OrderStatus, Place, RiderStatus

from conftest import DROPOFF, PICKUP

START = Location(-1.2800, 36.8100)


async def _accepted_order(coordinator, make_rider, rider_id="r1"):
    await make_rider(rider_id, *START.as_tuple())
    order = await coordinator.place_order("cust-1", Place("p", PICKUP), Place("d", DROPOFF))
    return await coordinator.accept(order.id, rider_id)


@pytest.mark.asyncio
async def test_report_updates_registry(pipeline, make_rider, registry):
    await make_rider("r1", status=RiderStatus.OFFLINE)
    update = await pipeline.report_location("r1", -1.2864, 36.8172, sequence=1)
    assert update is None  # no active order, nothing to track
    assert registry.get("r1").location == Location(-1.2864, 36.8172)


@pytest.mark.asyncio
async def test_same_sequence_is_idempotent(pipeline, make_rider, registry, recorded):
    await make_rider("r1", status=RiderStatus.OFFLINE)
    await pipeline.report_location("r1", -1.2864, 36.8172, sequence=7)
    state = registry.get("r1")
    count = len(recorded)

    await pipeline.report_location("r1", -1.2864, 36.8172, sequence=7)
    assert registry.get("r1") == state
    assert len(recorded) == count


@pytest.mark.asyncio
async def test_out_of_order_report_ignored(pipeline, make_rider, registry):
    await make_rider("r1", status=RiderStatus.OFFLINE)
    await pipeline.report_location("r1", -1.29, 36.82, sequence=10)
    await pipeline.report_location("r1", -1.20, 36.70, sequence=9)
    assert registry.get("r1").location == Location(-1.29, 36.82)


@pytest.mark.asyncio
async def test_unknown_rider(pipeline):
    with pytest.raises(NotFound):
        await pipeline.report_location("ghost", -1.28, 36.81)


@pytest.mark.asyncio
async def test_tracking_pickup_leg(pipeline, coordinator, make_rider, provider, recorded):
    order = await _accepted_order(coordinator, make_rider)
    here = Location(-1.2830, 36.8140)
    provider.distances[here.as_tuple()] = 0.6

    async with pipeline.watch(order.id) as watch:
        update = await pipeline.report_location("r1", *here.as_tuple(), sequence=1)
        assert update.leg == "pickup"
        assert update.distance_km == 0.6
        assert await watch.next() == update

    tracking = [e for e in recorded if e.name == events.ORDER_TRACKING]
    assert tracking[-1].payload["order_id"] == order.id
    assert tracking[-1].payload["eta_min"] == update.duration_min


@pytest.mark.asyncio
async def test_tracking_dropoff_leg_after_pickup(pipeline, coordinator, make_rider, provider):
    order = await _accepted_order(coordinator, make_rider)
    await coordinator.advance(order.id, OrderStatus.IN_PROGRESS)
    here = Location(-1.2900, 36.8200)
    provider.distances[here.as_tuple()] = 0.9

    update = await pipeline.report_location("r1", *here.as_tuple(), sequence=1)
    assert update.leg == "dropoff"
    (waypoints, _profile) = provider.calls[-1]
    assert waypoints == (here.as_tuple(), DROPOFF.as_tuple())


@pytest.mark.asyncio
async def test_tracking_survives_provider_outage(pipeline, coordinator, make_rider, provider):
    order = await _accepted_order(coordinator, make_rider)
    here = Location(-1.2830, 36.8140)
    provider.failing.add(here.as_tuple())
    update = await pipeline.report_location("r1", *here.as_tuple())
    assert update.order_id == order.id
    assert update.source == "haversine"


@pytest.mark.asyncio
async def test_watch_closes_when_order_completes(pipeline, coordinator, make_rider):
    order = await _accepted_order(coordinator, make_rider)
    watch = pipeline.open_watch(order.id)
    assert pipeline.active_watches(order.id) == 1

    await coordinator.advance(order.id, OrderStatus.IN_PROGRESS)
    await coordinator.advance(order.id, OrderStatus.COMPLETED)

    assert watch.closed
    assert await watch.next() is None
    assert pipeline.active_watches() == 0


@pytest.mark.asyncio
async def test_watch_on_terminal_order_is_closed(pipeline, coordinator):
    order = await coordinator.place_order("cust-1", Place("p", PICKUP), Place("d", DROPOFF))
    await coordinator.cancel(order.id)
    watch = pipeline.open_watch(order.id)
    assert watch.closed
    assert [u async for u in watch.updates()] == []
    assert pipeline.active_watches() == 0


@pytest.mark.asyncio
async def test_watch_context_cleans_up_on_error(pipeline, coordinator, make_rider):
    order = await _accepted_order(coordinator, make_rider)
    with pytest.raises(RuntimeError):
        async with pipeline.watch(order.id):
            assert pipeline.active_watches(order.id) == 1
            raise RuntimeError("client went away")
    assert pipeline.active_watches() == 0


@pytest.mark.asyncio
async def test_slow_watch_keeps_latest(pipeline, coordinator, make_rider):
    order = await _accepted_order(coordinator, make_rider)
    watch = pipeline.open_watch(order.id)
    for seq in range(1, 7):
        await pipeline.report_location("r1", -1.2800 - seq * 0.001, 36.8100, sequence=seq)

    received = []
    while not watch._queue.empty():
        received.append(await watch.next())
    # queue size 4: the two oldest were dropped
    assert len(received) == 4
    assert received[-1].rider_location == Location(-1.2800 - 6 * 0.001, 36.8100)
    pipeline.close_watch(watch)


@pytest.mark.asyncio
async def test_location_error_forces_offline_and_closes_watches(pipeline, coordinator, make_rider, registry):
    order = await _accepted_order(coordinator, make_rider)
    watch = pipeline.open_watch(order.id)

    rider = await pipeline.report_location_error("r1", "permission_denied")
    assert rider.status == RiderStatus.OFFLINE
    # The assignment survives; the rider resumes as busy once located again
    assert rider.active_order_id == order.id
    assert watch.closed
    assert pipeline.active_watches() == 0


# ── Reporting sessions ─────────────────────────────────────

@pytest.mark.asyncio
async def test_session_disconnect_forces_offline(pipeline, make_rider, registry):
    await make_rider("r1", *START.as_tuple())
    async with pipeline.session("r1") as session:
        await session.report(-1.2810, 36.8110, sequence=1)
        assert pipeline.active_sessions() == 1
    assert pipeline.active_sessions() == 0
    assert registry.get("r1").status == RiderStatus.OFFLINE
    assert registry.get("r1").location == Location(-1.2810, 36.8110)


@pytest.mark.asyncio
async def test_session_cancelled_when_rider_goes_offline(pipeline, make_rider, registry):
    await make_rider("r1", *START.as_tuple())
    async with pipeline.session("r1") as session:
        await registry.set_status("r1", RiderStatus.OFFLINE)
        assert session.cancelled.is_set()
        assert await session.report(-1.2900, 36.8200) is None
    assert registry.get("r1").location == START


@pytest.mark.asyncio
async def test_new_session_replaces_old(pipeline, make_rider, registry):
    await make_rider("r1", *START.as_tuple())
    async with pipeline.session("r1") as first:
        async with pipeline.session("r1") as second:
            assert first.cancelled.is_set()
            assert not second.cancelled.is_set()
        # the replaced session exiting must not knock the rider offline again
    assert pipeline.active_sessions() == 0
    assert registry.get("r1").status == RiderStatus.OFFLINE


@pytest.mark.asyncio
async def test_session_for_unknown_rider(pipeline):
    with pytest.raises(NotFound):
        async with pipeline.session("ghost"):
            pass


@pytest.mark.asyncio
async def test_session_wait_for_cancel(pipeline, make_rider, registry):
    await make_rider("r1", *START.as_tuple())
    async with pipeline.session("r1") as session:
        waiter = asyncio.create_task(session.cancelled.wait())
        await pipeline.report_location_error("r1", "gps_error")
        await asyncio.wait_for(waiter, timeout=1)
