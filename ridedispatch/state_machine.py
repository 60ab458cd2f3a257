"""
Ride lifecycle state machine.

    requested -> driver_assigned -> enroute_pickup -> passenger_onboard -> completed

with cancellation branches into cancelled_passenger, cancelled_driver and
cancelled_system. A driver who cancels before the passenger is on board is
unassigned and the ride goes back to `requested` for re-dispatch.

Each function takes a ride and returns a new one; the input is never
modified, so a rejected transition leaves nothing half-applied.
"""

from datetime import datetime
from typing import Optional

from . import models
from .errors import ConflictingState
from .schemas import Ride

# event -> (required current status, timestamp field)
PROGRESS_EVENTS = {
    models.RIDE_ENROUTE_PICKUP: (models.RIDE_DRIVER_ASSIGNED, "enroute_at"),
    models.RIDE_PASSENGER_ONBOARD: (models.RIDE_ENROUTE_PICKUP, "onboard_at"),
    models.RIDE_COMPLETED: (models.RIDE_PASSENGER_ONBOARD, "completed_at"),
}

PASSENGER_CANCELLABLE = frozenset({
    models.RIDE_REQUESTED,
    models.RIDE_DRIVER_ASSIGNED,
    models.RIDE_ENROUTE_PICKUP,
})

# driver cancelling from these states hands the ride back to matching
DRIVER_REASSIGNABLE = frozenset({
    models.RIDE_DRIVER_ASSIGNED,
    models.RIDE_ENROUTE_PICKUP,
})

# legal edges, used to audit a recorded status history
TRANSITIONS = {
    models.RIDE_REQUESTED: {
        models.RIDE_DRIVER_ASSIGNED,
        models.RIDE_CANCELLED_PASSENGER,
        models.RIDE_CANCELLED_SYSTEM,
    },
    models.RIDE_DRIVER_ASSIGNED: {
        models.RIDE_ENROUTE_PICKUP,
        models.RIDE_REQUESTED,
        models.RIDE_CANCELLED_PASSENGER,
        models.RIDE_CANCELLED_SYSTEM,
    },
    models.RIDE_ENROUTE_PICKUP: {
        models.RIDE_PASSENGER_ONBOARD,
        models.RIDE_REQUESTED,
        models.RIDE_CANCELLED_PASSENGER,
        models.RIDE_CANCELLED_SYSTEM,
    },
    models.RIDE_PASSENGER_ONBOARD: {
        models.RIDE_COMPLETED,
        models.RIDE_CANCELLED_DRIVER,
        models.RIDE_CANCELLED_SYSTEM,
    },
}


def is_valid_path(statuses: list[str]) -> bool:
    if not statuses or statuses[0] != models.RIDE_REQUESTED:
        return False
    return all(b in TRANSITIONS.get(a, ()) for a, b in zip(statuses, statuses[1:]))


def _ensure_open(ride: Ride, action: str):
    if ride.is_terminal:
        raise ConflictingState(f"cannot {action}: ride {ride.id} is {ride.status}", current=ride.status)


def _transition(ride: Ride, status: str, now: datetime, **changes) -> Ride:
    return ride.model_copy(update={"status": status, "updated_at": now, **changes})


def assign_driver(ride: Ride, driver_id: str, now: datetime) -> Ride:
    if ride.status != models.RIDE_REQUESTED or ride.driver_id is not None:
        raise ConflictingState(f"ride {ride.id} is no longer open for assignment", current=ride.status)
    return _transition(ride, models.RIDE_DRIVER_ASSIGNED, now, driver_id=driver_id, accepted_at=now)


def advance(ride: Ride, event: str, now: datetime) -> Ride:
    """Apply a driver-reported progress event."""
    if event not in PROGRESS_EVENTS:
        raise ConflictingState(f"unknown progress event {event!r}", current=ride.status)
    required, stamp = PROGRESS_EVENTS[event]
    if ride.status != required:
        raise ConflictingState(
            f"cannot move ride {ride.id} from {ride.status} to {event}",
            current=ride.status,
            details={"requested_status": event},
        )
    changes = {stamp: now}
    if event == models.RIDE_COMPLETED and ride.fare_quote is not None:
        changes["fare_actual_cents"] = ride.fare_quote.amount_cents
    return _transition(ride, event, now, **changes)


def cancel(ride: Ride, actor: str, reason: Optional[str], now: datetime) -> Ride:
    """Cancel on behalf of `actor`.

    A driver cancellation before pickup returns the ride to `requested` with
    the driver excluded from future matching; callers tell the two outcomes
    apart by the returned status.
    """
    _ensure_open(ride, "cancel")

    if actor == models.ACTOR_PASSENGER:
        if ride.status not in PASSENGER_CANCELLABLE:
            raise ConflictingState(f"passenger cannot cancel ride {ride.id} once on board", current=ride.status)
        return _transition(
            ride, models.RIDE_CANCELLED_PASSENGER, now,
            cancelled_at=now, cancellation_reason=reason or "passenger_cancelled",
        )

    if actor == models.ACTOR_DRIVER:
        if ride.status in DRIVER_REASSIGNABLE:
            return requeue_after_driver_cancel(ride, now)
        if ride.status == models.RIDE_PASSENGER_ONBOARD:
            return _transition(
                ride, models.RIDE_CANCELLED_DRIVER, now,
                cancelled_at=now, cancellation_reason=reason or models.REASON_DRIVER_CANCELLED,
            )
        raise ConflictingState(f"no driver is assigned to ride {ride.id}", current=ride.status)

    if actor == models.ACTOR_SYSTEM:
        return _transition(
            ride, models.RIDE_CANCELLED_SYSTEM, now,
            cancelled_at=now, cancellation_reason=reason or "system_cancelled",
        )

    raise ConflictingState(f"unknown cancellation actor {actor!r}", current=ride.status)


def record_attempt(ride: Ride, now: datetime) -> Ride:
    if ride.status != models.RIDE_REQUESTED:
        raise ConflictingState(f"ride {ride.id} is not awaiting dispatch", current=ride.status)
    return ride.model_copy(update={"dispatch_attempts": ride.dispatch_attempts + 1, "updated_at": now})


def requeue_after_driver_cancel(ride: Ride, now: datetime) -> Ride:
    """Unassign the driver and send the ride back to matching without them."""
    if ride.status not in DRIVER_REASSIGNABLE:
        raise ConflictingState(f"ride {ride.id} cannot be handed back to matching", current=ride.status)
    return _transition(
        ride, models.RIDE_REQUESTED, now,
        driver_id=None,
        accepted_at=None,
        enroute_at=None,
        driver_cancellations=ride.driver_cancellations + 1,
        excluded_driver_ids=ride.excluded_driver_ids + [ride.driver_id],
        dispatch_attempts=0,
    )
