"""Tests for the dispatcher offer/decline/re-evaluation loop."""

import asyncio

import pytest

from bodadispatch import events
from bodadispatch.errors import Conflict, NoCandidates
from bodadispatch.models import Location, OrderStatus, Place, RiderStatus
from bodadispatch.services.dispatcher import Dispatcher

from conftest import DROPOFF, PICKUP

NEAR = Location(-1.2800, 36.8100)
FAR = Location(-1.2600, 36.8000)


@pytest.fixture
def dispatcher(ledger, matching, bus, provider):
    provider.distances[NEAR.as_tuple()] = 1.0
    provider.distances[FAR.as_tuple()] = 3.2
    d = Dispatcher(ledger, matching, bus, auto_dispatch=True)
    d.start()
    return d


async def _place(coordinator):
    return await coordinator.place_order("cust-1", Place("p", PICKUP), Place("d", DROPOFF))


@pytest.mark.asyncio
async def test_placed_order_is_offered_to_nearest(dispatcher, coordinator, make_rider, ledger, recorded):
    await make_rider("far", *FAR.as_tuple())
    await make_rider("near", *NEAR.as_tuple())
    order = await _place(coordinator)
    await dispatcher.drain()

    stored = ledger.get(order.id)
    assert stored.held_by == "near"
    assert stored.status == OrderStatus.PENDING
    offered = [e for e in recorded if e.name == events.ORDER_OFFERED]
    assert offered[-1].payload["rider_id"] == "near"


@pytest.mark.asyncio
async def test_no_riders_marks_searching_once(dispatcher, coordinator, recorded):
    order = await _place(coordinator)
    await dispatcher.drain()
    assert order.id in dispatcher.searching

    with pytest.raises(NoCandidates):
        await dispatcher.dispatch(order.id)
    assert [e.name for e in recorded].count(events.ORDER_SEARCHING) == 1


@pytest.mark.asyncio
async def test_searching_order_offered_when_rider_comes_online(dispatcher, coordinator, make_rider, ledger):
    order = await _place(coordinator)
    await dispatcher.drain()
    assert order.id in dispatcher.searching

    await make_rider("near", *NEAR.as_tuple())
    await dispatcher.drain()
    assert ledger.get(order.id).held_by == "near"
    assert order.id not in dispatcher.searching


@pytest.mark.asyncio
async def test_decline_reoffers_to_next_rider(dispatcher, coordinator, make_rider, ledger):
    await make_rider("near", *NEAR.as_tuple())
    await make_rider("far", *FAR.as_tuple())
    order = await _place(coordinator)
    await dispatcher.drain()

    await coordinator.decline(order.id, "near")
    await dispatcher.drain()
    assert ledger.get(order.id).held_by == "far"

    await coordinator.decline(order.id, "far")
    await dispatcher.drain()
    stored = ledger.get(order.id)
    assert stored.held_by is None
    assert stored.declined_by == {"near", "far"}
    assert order.id in dispatcher.searching


@pytest.mark.asyncio
async def test_holder_going_offline_moves_offer(dispatcher, coordinator, make_rider, registry, ledger):
    await make_rider("near", *NEAR.as_tuple())
    await make_rider("far", *FAR.as_tuple())
    order = await _place(coordinator)
    await dispatcher.drain()
    assert ledger.get(order.id).held_by == "near"

    await registry.set_status("near", RiderStatus.OFFLINE)
    await dispatcher.drain()
    assert ledger.get(order.id).held_by == "far"


@pytest.mark.asyncio
async def test_one_offer_per_rider(dispatcher, coordinator, make_rider, ledger):
    await make_rider("near", *NEAR.as_tuple())
    await make_rider("far", *FAR.as_tuple())
    first = await _place(coordinator)
    await dispatcher.drain()
    second = await _place(coordinator)
    await dispatcher.drain()
    assert ledger.get(first.id).held_by == "near"
    assert ledger.get(second.id).held_by == "far"


@pytest.mark.asyncio
async def test_holder_accepts_with_offered_version(dispatcher, coordinator, make_rider, ledger):
    await make_rider("near", *NEAR.as_tuple())
    order = await _place(coordinator)
    await dispatcher.drain()
    offered = ledger.get(order.id)

    accepted = await coordinator.accept(order.id, "near", expected_version=offered.version)
    await dispatcher.drain()
    assert accepted.status == OrderStatus.ACCEPTED
    assert accepted.held_by is None
    assert ledger.get(order.id).rider_id == "near"


@pytest.mark.asyncio
async def test_dispatch_closed_order_conflicts(dispatcher, coordinator):
    order = await _place(coordinator)
    await dispatcher.drain()
    await coordinator.cancel(order.id)
    assert order.id not in dispatcher.searching
    with pytest.raises(Conflict):
        await dispatcher.dispatch(order.id)


@pytest.mark.asyncio
async def test_manual_dispatch_without_auto(ledger, matching, bus, coordinator, make_rider):
    d = Dispatcher(ledger, matching, bus, auto_dispatch=False)
    d.start()
    await make_rider("near", *NEAR.as_tuple())
    order = await _place(coordinator)
    await d.drain()
    assert ledger.get(order.id).held_by is None

    rider = await d.dispatch(order.id)
    assert rider.id == "near"
    assert ledger.get(order.id).held_by == "near"
    await d.stop()


@pytest.mark.asyncio
async def test_stop_unsubscribes(dispatcher, bus):
    before = bus.subscriber_count
    await dispatcher.stop()
    assert bus.subscriber_count < before


@pytest.mark.asyncio
async def test_losing_accept_keeps_riders_other_offer(dispatcher, coordinator, make_rider, registry, ledger):
    await make_rider("near", *NEAR.as_tuple())
    await make_rider("far", *FAR.as_tuple())
    first = await _place(coordinator)
    await dispatcher.drain()
    second = await _place(coordinator)
    await dispatcher.drain()
    assert ledger.get(second.id).held_by == "far"

    await coordinator.accept(first.id, "near")
    with pytest.raises(Conflict):
        await coordinator.accept(first.id, "far")
    await dispatcher.drain()

    assert ledger.get(second.id).held_by == "far"
    assert registry.get("far").status == RiderStatus.AVAILABLE


@pytest.mark.asyncio
async def test_concurrent_dispatches_offer_distinct_riders(ledger, matching, bus, coordinator, make_rider, provider):
    provider.distances[NEAR.as_tuple()] = 1.0
    provider.distances[FAR.as_tuple()] = 3.2
    await make_rider("near", *NEAR.as_tuple())
    await make_rider("far", *FAR.as_tuple())
    d = Dispatcher(ledger, matching, bus, auto_dispatch=False)
    first = await _place(coordinator)
    second = await _place(coordinator)

    # Route lookups suspend, so both dispatches rank riders before either holds
    provider.slow.update({NEAR.as_tuple(), FAR.as_tuple()})
    provider.delay = 0.02
    riders = await asyncio.gather(d.dispatch(first.id), d.dispatch(second.id))

    assert sorted(r.id for r in riders) == ["far", "near"]
    holds = {ledger.get(first.id).held_by, ledger.get(second.id).held_by}
    assert holds == {"near", "far"}


@pytest.mark.asyncio
async def test_ledger_refuses_second_offer_to_same_rider(coordinator, ledger):
    first = await _place(coordinator)
    second = await _place(coordinator)
    ledger.hold(first.id, "near")
    with pytest.raises(Conflict):
        ledger.hold(second.id, "near")
    assert ledger.get(second.id).held_by is None

    # Once the first offer is gone the rider can be offered again
    ledger.clear_hold(first.id, "near")
    assert ledger.hold(second.id, "near").held_by == "near"
