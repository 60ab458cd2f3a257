import pytest

from ridedispatch import models, state_machine
from ridedispatch.clock import utcnow
from ridedispatch.errors import ConflictingState
from ridedispatch.fares import quote
from ridedispatch.test.support import DROPOFF, PICKUP, make_ride, make_settings


def assigned_ride(driver_id="driver-1"):
    return state_machine.assign_driver(make_ride(), driver_id, utcnow())


def test_happy_path_to_completed():
    ride = make_ride(fare_quote=quote(PICKUP, DROPOFF, make_settings()))
    history = [ride.status]
    ride = state_machine.assign_driver(ride, "driver-1", utcnow())
    history.append(ride.status)
    for event in ("enroute_pickup", "passenger_onboard", "completed"):
        ride = state_machine.advance(ride, event, utcnow())
        history.append(ride.status)

    assert state_machine.is_valid_path(history)
    assert ride.status == models.RIDE_COMPLETED
    assert ride.driver_id == "driver-1"
    assert ride.fare_actual_cents == ride.fare_quote.amount_cents
    assert ride.accepted_at <= ride.enroute_at <= ride.onboard_at <= ride.completed_at


def test_skipping_a_step_is_rejected_without_mutation():
    ride = assigned_ride()
    before = ride.model_dump()
    with pytest.raises(ConflictingState) as err:
        state_machine.advance(ride, "completed", utcnow())
    assert err.value.details["current_status"] == models.RIDE_DRIVER_ASSIGNED
    assert ride.model_dump() == before


def test_second_assignment_is_rejected():
    ride = assigned_ride()
    with pytest.raises(ConflictingState):
        state_machine.assign_driver(ride, "driver-2", utcnow())


def test_passenger_cancel_before_pickup():
    ride = state_machine.advance(assigned_ride(), "enroute_pickup", utcnow())
    ride = state_machine.cancel(ride, models.ACTOR_PASSENGER, None, utcnow())
    assert ride.status == models.RIDE_CANCELLED_PASSENGER
    assert ride.cancelled_at is not None


def test_passenger_cannot_cancel_once_on_board():
    ride = assigned_ride()
    for event in ("enroute_pickup", "passenger_onboard"):
        ride = state_machine.advance(ride, event, utcnow())
    with pytest.raises(ConflictingState):
        state_machine.cancel(ride, models.ACTOR_PASSENGER, "changed my mind", utcnow())


def test_driver_cancel_before_pickup_goes_back_to_requested():
    ride = state_machine.record_attempt(make_ride(), utcnow())
    ride = state_machine.assign_driver(ride, "driver-1", utcnow())
    ride = state_machine.cancel(ride, models.ACTOR_DRIVER, "flat tyre", utcnow())
    assert ride.status == models.RIDE_REQUESTED
    assert ride.driver_id is None
    assert ride.excluded_driver_ids == ["driver-1"]
    assert ride.driver_cancellations == 1
    assert ride.dispatch_attempts == 0
    assert state_machine.is_valid_path([models.RIDE_REQUESTED, models.RIDE_DRIVER_ASSIGNED, models.RIDE_REQUESTED])


def test_driver_cancel_on_board_is_terminal():
    ride = assigned_ride()
    for event in ("enroute_pickup", "passenger_onboard"):
        ride = state_machine.advance(ride, event, utcnow())
    ride = state_machine.cancel(ride, models.ACTOR_DRIVER, None, utcnow())
    assert ride.status == models.RIDE_CANCELLED_DRIVER
    assert ride.is_terminal


def test_driver_cannot_cancel_unassigned_ride():
    with pytest.raises(ConflictingState):
        state_machine.cancel(make_ride(), models.ACTOR_DRIVER, None, utcnow())


def test_terminal_rides_reject_everything():
    ride = state_machine.cancel(make_ride(), models.ACTOR_SYSTEM, models.REASON_NO_DRIVERS, utcnow())
    assert ride.cancellation_reason == models.REASON_NO_DRIVERS
    with pytest.raises(ConflictingState):
        state_machine.cancel(ride, models.ACTOR_PASSENGER, None, utcnow())
    with pytest.raises(ConflictingState):
        state_machine.assign_driver(ride, "driver-1", utcnow())
    with pytest.raises(ConflictingState):
        state_machine.record_attempt(ride, utcnow())


def test_unknown_progress_event():
    with pytest.raises(ConflictingState):
        state_machine.advance(assigned_ride(), "teleported", utcnow())


def test_invalid_paths():
    assert not state_machine.is_valid_path([])
    assert not state_machine.is_valid_path([models.RIDE_DRIVER_ASSIGNED])
    assert not state_machine.is_valid_path([models.RIDE_REQUESTED, models.RIDE_COMPLETED])
    assert not state_machine.is_valid_path([models.RIDE_REQUESTED, models.RIDE_CANCELLED_SYSTEM, models.RIDE_REQUESTED])


def test_requeue_requires_an_assigned_driver():
    with pytest.raises(ConflictingState):
        state_machine.requeue_after_driver_cancel(make_ride(), utcnow())
    ride = state_machine.requeue_after_driver_cancel(assigned_ride("driver-9"), utcnow())
    assert ride.status == models.RIDE_REQUESTED and ride.excluded_driver_ids == ["driver-9"]
