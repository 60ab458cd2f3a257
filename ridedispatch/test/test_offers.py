import asyncio
from datetime import timedelta

import pytest

from ridedispatch import events, models
from ridedispatch.clock import utcnow
from ridedispatch.errors import ConflictingState, Forbidden, NotFound
from ridedispatch.matching import RankedCandidate
from ridedispatch.offers import OUTCOME_ASSIGNED, OUTCOME_CANCELLED, OUTCOME_EXHAUSTED
from ridedispatch.schemas import Assignment
from ridedispatch.test.support import make_ride


def candidates(*driver_ids):
    return [RankedCandidate(d, 1.0 - i * 0.1, 1.0 + i) for i, d in enumerate(driver_ids)]


async def start(engine, ride_id="ride-1", drivers=("A", "B"), timeout=None):
    if await engine.store.get_ride(ride_id) is None:
        await engine.store.add_ride(make_ride(id=ride_id))
    return asyncio.create_task(engine.offers.dispatch(ride_id, candidates(*drivers), timeout))


async def test_accept_assigns_driver(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")
    assert offer.status == models.ASSIGN_PENDING
    assert offer.deadline_at > offer.created_at

    assignment, ride = await engine.offers.respond(offer.id, "A", True, eta_minutes=4)
    outcome = await task

    assert outcome.kind == OUTCOME_ASSIGNED and outcome.driver_id == "A"
    assert assignment.status == models.ASSIGN_ACCEPTED and assignment.eta_minutes == 4
    assert ride.status == models.RIDE_DRIVER_ASSIGNED and ride.driver_id == "A"
    assert [a.driver_id for a in await engine.store.list_assignments("ride-1")] == ["A"]
    assert (await engine.store.get_stats(["A"]))["A"].accepted == 1
    assert engine.publisher.of_type(events.RIDE_DRIVER_ASSIGNED)


async def test_decline_moves_to_next_candidate(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")
    await engine.offers.respond(offer.id, "A", False)

    second = await engine.wait_for_offer("B")
    await engine.offers.respond(second.id, "B", True)
    outcome = await task

    assert outcome.driver_id == "B"
    statuses = {a.driver_id: a.status for a in await engine.store.list_assignments("ride-1")}
    assert statuses == {"A": models.ASSIGN_DECLINED, "B": models.ASSIGN_ACCEPTED}


async def test_timeout_expires_offer_and_moves_on(engine):
    task = await start(engine, timeout=0.1)
    first = await engine.wait_for_offer("A")
    second = await engine.wait_for_offer("B")
    outcome = await task

    assert outcome.kind == OUTCOME_EXHAUSTED
    expired = {a.id: a for a in await engine.store.list_assignments("ride-1")}
    assert expired[first.id].status == models.ASSIGN_EXPIRED
    assert expired[first.id].reason_code == models.REASON_TIMEOUT
    assert expired[second.id].status == models.ASSIGN_EXPIRED
    assert len(engine.publisher.of_type(events.OFFER_EXPIRED)) == 2
    assert (await engine.store.get_ride("ride-1")).status == models.RIDE_REQUESTED


async def test_accept_after_expiry_is_rejected(engine):
    task = await start(engine, drivers=("A",), timeout=0.05)
    offer = await engine.wait_for_offer("A")
    await task

    with pytest.raises(ConflictingState):
        await engine.offers.respond(offer.id, "A", True)
    ride = await engine.store.get_ride("ride-1")
    assert ride.status == models.RIDE_REQUESTED and ride.driver_id is None
    stats = (await engine.store.get_stats(["A"]))["A"]
    assert stats.expired == 1 and stats.late_responses == 1


async def test_response_past_deadline_loses_to_the_deadline(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")
    engine.offers.clock = lambda: utcnow() + timedelta(seconds=30)

    with pytest.raises(ConflictingState):
        await engine.offers.respond(offer.id, "A", True)
    assert (await engine.store.get_assignment(offer.id)).status == models.ASSIGN_EXPIRED

    second = await engine.wait_for_offer("B")
    await engine.offers.respond(second.id, "B", True)
    assert (await task).driver_id == "B"


async def test_only_the_offered_driver_may_respond(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")
    with pytest.raises(Forbidden):
        await engine.offers.respond(offer.id, "B", True)
    with pytest.raises(NotFound):
        await engine.offers.respond("missing", "A", True)
    assert (await engine.store.get_assignment(offer.id)).is_pending
    await engine.offers.respond(offer.id, "A", True)
    await task


async def test_double_accept_has_one_winner(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")
    results = await asyncio.gather(
        engine.offers.respond(offer.id, "A", True),
        engine.offers.respond(offer.id, "A", True),
        return_exceptions=True,
    )
    assert sum(isinstance(r, ConflictingState) for r in results) == 1
    assert (await task).kind == OUTCOME_ASSIGNED
    assert len(await engine.store.list_assignments("ride-1")) == 1


async def test_cancellation_interrupts_pending_offer(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")

    ride = await engine.coordinator.cancel_ride("passenger-1", "ride-1", models.ACTOR_PASSENGER)
    assert ride.status == models.RIDE_CANCELLED_PASSENGER
    assert (await task).kind == OUTCOME_CANCELLED

    withdrawn = await engine.store.get_assignment(offer.id)
    assert withdrawn.status == models.ASSIGN_EXPIRED
    assert withdrawn.reason_code == models.REASON_RIDE_CANCELLED
    with pytest.raises(ConflictingState):
        await engine.offers.respond(offer.id, "A", True)
    # a withdrawn offer is not the driver's fault
    assert (await engine.store.get_stats(["A"]))["A"].late_responses == 0
    assert engine.publisher.of_type(events.OFFER_WITHDRAWN)


async def test_driver_with_pending_offer_is_skipped(engine):
    first = await start(engine, "ride-1", drivers=("A",))
    busy = await engine.wait_for_offer("A")
    second = await start(engine, "ride-2", drivers=("A", "B"))
    other = await engine.wait_for_offer("B")

    assert other.ride_id == "ride-2"
    assert [a.ride_id for a in await engine.store.pending_assignments(driver_id="A")] == ["ride-1"]

    await engine.offers.respond(busy.id, "A", True)
    await engine.offers.respond(other.id, "B", True)
    assert (await first).driver_id == "A"
    assert (await second).driver_id == "B"



async def test_driver_on_an_active_ride_is_skipped(engine):
    await engine.store.add_ride(make_ride(id="ride-0", status=models.RIDE_ENROUTE_PICKUP, driver_id="A"))
    task = await start(engine, "ride-1", drivers=("A", "B"))
    offer = await engine.wait_for_offer("B")

    assert offer.ride_id == "ride-1"
    assert await engine.store.pending_assignments(driver_id="A") == []
    await engine.offers.respond(offer.id, "B", True)
    assert (await task).driver_id == "B"


async def test_accept_refused_while_driver_is_on_another_ride(engine):
    now = utcnow()
    await engine.store.add_ride(make_ride(id="ride-0", status=models.RIDE_DRIVER_ASSIGNED, driver_id="A"))
    await engine.store.add_ride(make_ride(id="ride-1"))
    stray = Assignment(id="o1", ride_id="ride-1", driver_id="A", created_at=now, deadline_at=now + timedelta(seconds=20))
    await engine.store.save(assignments=[stray])

    with pytest.raises(ConflictingState):
        await engine.offers.respond("o1", "A", True)
    assert (await engine.store.get_assignment("o1")).is_pending
    ride = await engine.store.get_ride("ride-1")
    assert ride.status == models.RIDE_REQUESTED and ride.driver_id is None

async def test_second_dispatch_for_same_ride_is_refused(engine):
    task = await start(engine)
    offer = await engine.wait_for_offer("A")
    assert engine.offers.is_dispatching("ride-1")
    with pytest.raises(ConflictingState):
        await engine.offers.dispatch("ride-1", candidates("B"))
    await engine.offers.respond(offer.id, "A", True)
    await task
    assert not engine.offers.is_dispatching("ride-1")


async def test_dispatch_stops_when_ride_already_closed(engine):
    await engine.store.add_ride(make_ride(status=models.RIDE_CANCELLED_PASSENGER))
    outcome = await engine.offers.dispatch("ride-1", candidates("A"))
    assert outcome.kind == OUTCOME_CANCELLED
    assert await engine.store.list_assignments("ride-1") == []
