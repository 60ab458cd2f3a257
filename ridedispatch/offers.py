"""
Offer manager.

Offers a ride to ranked drivers one at a time. Each offer is an Assignment
in `pending` with a hard deadline. The workflow for a ride then waits on a
single queue that receives driver responses and ride cancellation; the
deadline is the timeout of that wait. Whichever of accept, decline, timeout
or cancellation is applied first under the ride lock wins.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Sequence
import asyncio
import logging
import uuid

from . import events, models, state_machine
from .clock import utcnow
from .errors import ConflictingState, Forbidden, NotFound
from .locks import KeyedLocks
from .matching import RankedCandidate
from .schemas import Assignment, Ride

logger = logging.getLogger(__name__)

OUTCOME_ASSIGNED = "assigned"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_CANCELLED = "cancelled"

SIGNAL_ACCEPTED = "accepted"
SIGNAL_DECLINED = "declined"
SIGNAL_EXPIRED = "expired"
SIGNAL_CANCELLED = "cancelled"
SIGNAL_TIMEOUT = "timeout"

# respond() results that never reach the workflow
_LATE = "late"
_EXPIRED_NOW = "expired_now"
_STALE = "stale"


@dataclass(frozen=True)
class DispatchOutcome:
    kind: str
    driver_id: Optional[str] = None
    assignment_id: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.kind == OUTCOME_ASSIGNED


@dataclass(frozen=True)
class _Signal:
    kind: str
    assignment_id: Optional[str] = None


def new_id() -> str:
    return uuid.uuid4().hex


class OfferManager:
    def __init__(self, store, locks: KeyedLocks, publisher, offer_timeout: float, clock=utcnow):
        self.store = store
        self.locks = locks
        self.publisher = publisher
        self.offer_timeout = offer_timeout
        self.clock = clock
        self._driver_locks = KeyedLocks()
        self._channels: dict[str, asyncio.Queue] = {}

    def is_dispatching(self, ride_id: str) -> bool:
        return ride_id in self._channels

    async def dispatch(self, ride_id: str, ranked: Sequence[RankedCandidate], timeout: float | None = None) -> DispatchOutcome:
        """Offer the ride down the ranked list until someone accepts."""
        timeout = self.offer_timeout if timeout is None else timeout
        if ride_id in self._channels:
            raise ConflictingState(f"ride {ride_id} is already being dispatched")
        channel: asyncio.Queue = asyncio.Queue()
        self._channels[ride_id] = channel
        try:
            for candidate in ranked:
                try:
                    assignment = await self._offer(ride_id, candidate, timeout)
                except ConflictingState:
                    logger.info("dispatch_stopped: ride=%s no longer requested", ride_id)
                    return DispatchOutcome(OUTCOME_CANCELLED)
                if assignment is None:
                    continue

                signal = await self._wait(channel, assignment, timeout)
                if signal == SIGNAL_TIMEOUT:
                    signal = await self._expire(assignment)

                if signal == SIGNAL_ACCEPTED:
                    return DispatchOutcome(OUTCOME_ASSIGNED, assignment.driver_id, assignment.id)
                if signal == SIGNAL_CANCELLED:
                    return DispatchOutcome(OUTCOME_CANCELLED)
                # declined or expired: next candidate
            logger.info("dispatch_exhausted: ride=%s candidates=%d", ride_id, len(ranked))
            return DispatchOutcome(OUTCOME_EXHAUSTED)
        finally:
            del self._channels[ride_id]

    async def _offer(self, ride_id: str, candidate: RankedCandidate, timeout: float) -> Optional[Assignment]:
        """Create a pending assignment, or return None if the driver is busy.

        Raises ConflictingState once the ride has left `requested`.
        """
        async with self.locks.hold(ride_id):
            ride = await self.store.get_ride(ride_id)
            if ride is None or ride.status != models.RIDE_REQUESTED:
                raise ConflictingState(f"ride {ride_id} is not requested", current=ride.status if ride else None)
            # one pending offer per driver; the driver lock keeps two rides from both passing this check
            async with self._driver_locks.hold(candidate.driver_id):
                if await self.store.pending_assignments(driver_id=candidate.driver_id):
                    logger.info("offer_skipped: ride=%s driver=%s has a pending offer", ride_id, candidate.driver_id)
                    return None
                active = await self.store.active_ride_for_driver(candidate.driver_id)
                if active is not None:
                    logger.info("offer_skipped: ride=%s driver=%s is on ride %s", ride_id, candidate.driver_id, active.id)
                    return None
                if await self.store.pending_assignments(ride_id=ride_id):
                    raise ConflictingState(f"ride {ride_id} already has a pending offer", current=ride.status)
                now = self.clock()
                assignment = Assignment(
                    id=new_id(),
                    ride_id=ride_id,
                    driver_id=candidate.driver_id,
                    score=candidate.score,
                    created_at=now,
                    deadline_at=now + timedelta(seconds=timeout),
                )
                await self.store.save(assignments=[assignment])

        await self.store.bump_stats(candidate.driver_id, now, offers=1)
        logger.info(
            "offer_created: ride=%s driver=%s assignment=%s score=%.4f dist_km=%.3f",
            ride_id, candidate.driver_id, assignment.id, candidate.score, candidate.distance_km,
        )
        await self.publisher.emit(
            events.OFFER_CREATED, ride_id,
            assignment_id=assignment.id, driver_id=assignment.driver_id,
            deadline_at=assignment.deadline_at.isoformat(),
        )
        return assignment

    async def _wait(self, channel: asyncio.Queue, assignment: Assignment, timeout: float) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return SIGNAL_TIMEOUT
            try:
                signal = await asyncio.wait_for(channel.get(), timeout=remaining)
            except asyncio.TimeoutError:
                return SIGNAL_TIMEOUT
            # responses to earlier offers of this ride are stale
            if signal.assignment_id in (None, assignment.id):
                return signal.kind

    async def _expire(self, assignment: Assignment) -> str:
        async with self.locks.hold(assignment.ride_id):
            current = await self.store.get_assignment(assignment.id)
            if not current.is_pending:
                # resolved in the same tick as the deadline
                if current.status == models.ASSIGN_ACCEPTED:
                    return SIGNAL_ACCEPTED
                ride = await self.store.get_ride(assignment.ride_id)
                if ride.status != models.RIDE_REQUESTED:
                    return SIGNAL_CANCELLED
                return SIGNAL_EXPIRED if current.status == models.ASSIGN_EXPIRED else SIGNAL_DECLINED
            now = self.clock()
            expired = current.model_copy(update={"status": models.ASSIGN_EXPIRED, "reason_code": models.REASON_TIMEOUT})
            await self.store.save(assignments=[expired])

        await self.store.bump_stats(expired.driver_id, now, expired=1)
        logger.info("offer_expired: ride=%s driver=%s assignment=%s", expired.ride_id, expired.driver_id, expired.id)
        await self.publisher.emit(events.OFFER_EXPIRED, expired.ride_id, assignment_id=expired.id, driver_id=expired.driver_id)
        return SIGNAL_EXPIRED

    async def respond(self, assignment_id: str, driver_id: str, accept: bool, eta_minutes: int | None = None) -> tuple[Assignment, Ride]:
        """Apply a driver's answer to an offer.

        Stale answers (offer already resolved, past its deadline, or the ride
        no longer open) raise ConflictingState and leave the ride untouched.
        """
        assignment = await self.store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound("offer", assignment_id)
        if assignment.driver_id != driver_id:
            raise Forbidden("offer belongs to another driver", details={"assignment_id": assignment_id})

        async with self.locks.hold(assignment.ride_id):
            assignment = await self.store.get_assignment(assignment_id)
            ride = await self.store.get_ride(assignment.ride_id)
            now = self.clock()
            if not assignment.is_pending:
                timed_out = assignment.status == models.ASSIGN_EXPIRED and assignment.reason_code == models.REASON_TIMEOUT
                result = _LATE if timed_out else _STALE
            elif now > assignment.deadline_at:
                # the waiting workflow has not woken up yet; the deadline still wins
                assignment = assignment.model_copy(update={"status": models.ASSIGN_EXPIRED, "reason_code": models.REASON_TIMEOUT})
                await self.store.save(assignments=[assignment])
                result = _EXPIRED_NOW
            elif accept:
                if ride.status != models.RIDE_REQUESTED or ride.driver_id is not None:
                    raise ConflictingState(f"ride {ride.id} is no longer open", current=ride.status)
                active = await self.store.active_ride_for_driver(driver_id)
                if active is not None:
                    raise ConflictingState(f"driver {driver_id} is already on ride {active.id}", current=active.status)
                ride = state_machine.assign_driver(ride, driver_id, now)
                assignment = assignment.model_copy(update={
                    "status": models.ASSIGN_ACCEPTED, "responded_at": now, "eta_minutes": eta_minutes,
                })
                superseded = [
                    a.model_copy(update={"status": models.ASSIGN_REASSIGNED, "reason_code": models.REASON_SUPERSEDED})
                    for a in await self.store.pending_assignments(ride_id=ride.id)
                    if a.id != assignment.id
                ]
                await self.store.save(ride, [assignment, *superseded])
                result = SIGNAL_ACCEPTED
            else:
                assignment = assignment.model_copy(update={"status": models.ASSIGN_DECLINED, "responded_at": now})
                await self.store.save(assignments=[assignment])
                result = SIGNAL_DECLINED

        if result == _STALE:
            raise ConflictingState(f"offer {assignment_id} is already {assignment.status}", current=assignment.status)

        if result in (_LATE, _EXPIRED_NOW):
            counters = {"late_responses": 1}
            if result == _EXPIRED_NOW:
                counters["expired"] = 1
            await self.store.bump_stats(driver_id, now, **counters)
            logger.info("offer_late_response: ride=%s driver=%s assignment=%s", assignment.ride_id, driver_id, assignment_id)
            if result == _EXPIRED_NOW:
                await self.publisher.emit(events.OFFER_EXPIRED, assignment.ride_id, assignment_id=assignment_id, driver_id=driver_id)
                self._signal(assignment.ride_id, _Signal(SIGNAL_EXPIRED, assignment_id))
            raise ConflictingState(f"offer {assignment_id} has expired", current=models.ASSIGN_EXPIRED)

        if result == SIGNAL_ACCEPTED:
            await self.store.bump_stats(driver_id, now, accepted=1)
            logger.info("offer_accepted: ride=%s driver=%s assignment=%s", ride.id, driver_id, assignment_id)
            await self.publisher.emit(events.OFFER_ACCEPTED, ride.id, assignment_id=assignment_id, driver_id=driver_id)
            await self.publisher.emit(events.RIDE_DRIVER_ASSIGNED, ride.id, driver_id=driver_id, eta_minutes=eta_minutes)
        else:
            await self.store.bump_stats(driver_id, now, declined=1)
            logger.info("offer_declined: ride=%s driver=%s assignment=%s", ride.id, driver_id, assignment_id)
            await self.publisher.emit(events.OFFER_DECLINED, ride.id, assignment_id=assignment_id, driver_id=driver_id)
        self._signal(ride.id, _Signal(result, assignment_id))
        return assignment, ride

    def _signal(self, ride_id: str, signal: _Signal) -> None:
        channel = self._channels.get(ride_id)
        if channel is not None:
            channel.put_nowait(signal)

    async def withdraw(self, ride_id: str) -> list[Assignment]:
        """Expire the pending offers of a ride that is being cancelled.

        The caller holds the ride lock and saves the returned assignments
        together with the cancelled ride, then calls `interrupt`.
        """
        return [
            a.model_copy(update={"status": models.ASSIGN_EXPIRED, "reason_code": models.REASON_RIDE_CANCELLED})
            for a in await self.store.pending_assignments(ride_id=ride_id)
        ]

    def interrupt(self, ride_id: str) -> None:
        self._signal(ride_id, _Signal(SIGNAL_CANCELLED))
