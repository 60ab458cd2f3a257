"""
Dispatch coordinator.

Entry point for every engine operation. A ride request starts one asyncio
task that ranks drivers, runs the offer manager and retries with backoff;
driver and passenger operations route into the offer manager or the ride
state machine under the per-ride lock.
"""

from typing import Optional
import asyncio
import logging

import pydantic

from . import events, fares, matching, models, state_machine
from .clock import utcnow
from .errors import ConflictingState, ExhaustedRetries, Forbidden, NoEligibleDrivers, NotFound, ValidationError
from .offers import OUTCOME_EXHAUSTED, DispatchOutcome, OfferManager, new_id
from .schemas import (
    Assignment,
    DriverAvailability,
    HeartbeatIn,
    Location,
    NearbyDriver,
    Ride,
    RideCreate,
)

logger = logging.getLogger(__name__)


def _coerce(model, payload):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid {model.__name__}", details={"errors": e.errors(include_url=False, include_context=False, include_input=False)})


class DispatchCoordinator:
    def __init__(self, store, availability, offers: OfferManager, publisher, distance, settings, clock=utcnow):
        self.store = store
        self.availability = availability
        self.offers = offers
        self.locks = offers.locks
        self.publisher = publisher
        self.distance = distance
        self.settings = settings
        self.clock = clock
        self.weights = matching.MatchWeights.from_settings(settings)
        self._tasks: dict[str, asyncio.Task] = {}

    # Driver-facing

    async def send_heartbeat(self, driver_id: str, payload) -> DriverAvailability:
        """Overwrite the driver's availability. Never touches rides."""
        payload = _coerce(HeartbeatIn, payload)
        record = await self.availability.heartbeat(driver_id, payload, self.clock())
        logger.debug("heartbeat: driver=%s status=%s capacity=%s", driver_id, record.status, record.capacity)
        await self.publisher.emit(
            events.DRIVER_AVAILABILITY,
            driver_id=driver_id, status=record.status, capacity=record.capacity,
        )
        return record

    async def nearby_drivers(self, location, radius_km: float, limit: int = 20) -> list[NearbyDriver]:
        location = _coerce(Location, location)
        found = await self.availability.nearby(location, radius_km, limit, self.clock())
        return [
            NearbyDriver(driver_id=a.driver_id, distance_km=round(km, 3), capacity=a.capacity, location=a.location)
            for a, km in found
        ]

    async def list_offers(self, driver_id: str) -> list[Assignment]:
        offers = await self.store.pending_assignments(driver_id=driver_id)
        return sorted(offers, key=lambda a: a.created_at)

    async def accept_offer(self, driver_id: str, assignment_id: str, eta_minutes: Optional[int] = None) -> Assignment:
        assignment, _ = await self.offers.respond(assignment_id, driver_id, True, eta_minutes)
        return assignment

    async def reject_offer(self, driver_id: str, assignment_id: str) -> Assignment:
        assignment, _ = await self.offers.respond(assignment_id, driver_id, False)
        return assignment

    async def respond_to_offer(self, driver_id: str, assignment_id: str, accept: bool) -> Assignment:
        if accept:
            return await self.accept_offer(driver_id, assignment_id)
        return await self.reject_offer(driver_id, assignment_id)

    async def report_progress(self, driver_id: str, ride_id: str, event: str) -> Ride:
        async with self.locks.hold(ride_id):
            ride = await self._get(ride_id)
            if ride.driver_id != driver_id:
                raise Forbidden("ride is not assigned to this driver", details={"ride_id": ride_id})
            now = self.clock()
            ride = state_machine.advance(ride, event, now)
            await self.store.save(ride)

        if ride.status == models.RIDE_COMPLETED:
            await self.store.bump_stats(driver_id, now, last_completed=True)
        logger.info("ride_progress: ride=%s driver=%s status=%s", ride_id, driver_id, ride.status)
        await self.publisher.emit(events.ride_progress(ride.status), ride_id, driver_id=driver_id)
        return ride

    # Passenger-facing

    async def request_ride(self, passenger_id: str, payload, idempotency_key: Optional[str] = None) -> Ride:
        """Create a ride in `requested` and start dispatching it in the background."""
        payload = _coerce(RideCreate, payload)
        if idempotency_key:
            existing_id = await self.store.get_idempotent(idempotency_key)
            if existing_id:
                return await self._replay(existing_id, passenger_id, idempotency_key)

        now = self.clock()
        open_requests = len(await self.store.rides_with_status(models.RIDE_REQUESTED)) + 1
        supply = len(await self.availability.nearby(payload.pickup, self.weights.radius_km, 1000, now))
        surge = fares.surge_multiplier(open_requests, supply, self.settings.MAX_SURGE)
        ride = Ride(
            id=new_id(),
            passenger_id=passenger_id,
            pickup=payload.pickup,
            dropoff=payload.dropoff,
            seats=payload.seats,
            fare_quote=fares.quote(payload.pickup, payload.dropoff, self.settings, surge),
            surge_multiplier=surge,
            requested_at=now,
            updated_at=now,
        )
        owner_id = await self.store.add_ride(ride, idempotency_key)
        if owner_id != ride.id:
            # a concurrent request with the same key got there first
            return await self._replay(owner_id, passenger_id, idempotency_key)
        logger.info("ride_requested: ride=%s passenger=%s seats=%s surge=%.2f", ride.id, passenger_id, ride.seats, surge)
        await self.publisher.emit(events.RIDE_REQUESTED, ride.id, passenger_id=passenger_id, seats=ride.seats)
        self._start(ride.id)
        return ride

    async def _replay(self, ride_id: str, passenger_id: str, idempotency_key: str) -> Ride:
        existing = await self._get(ride_id)
        if existing.passenger_id != passenger_id:
            raise ConflictingState("idempotency key belongs to another ride request")
        logger.info("request_ride_replayed: ride=%s key=%s", existing.id, idempotency_key)
        return existing

    async def get_ride(self, ride_id: str, actor_id: Optional[str] = None) -> Ride:
        ride = await self._get(ride_id)
        if actor_id is not None:
            await self._authorize_reader(ride, actor_id)
        return ride

    async def list_assignments(self, ride_id: str, actor_id: Optional[str] = None) -> list[Assignment]:
        ride = await self._get(ride_id)
        if actor_id is not None and actor_id not in (ride.passenger_id, models.ACTOR_SYSTEM):
            raise Forbidden("only the passenger can read the offer history", details={"ride_id": ride_id})
        return await self.store.list_assignments(ride_id)

    async def cancel_ride(
        self, actor_id: str, ride_id: str, actor: str, reason: Optional[str] = None, error_code: Optional[str] = None,
    ) -> Ride:
        """Cancel as passenger, driver or system.

        Passenger and system cancellations interrupt an in-flight offer. A
        driver cancelling before pickup sends the ride back to matching
        without that driver.
        """
        async with self.locks.hold(ride_id):
            ride = await self._get(ride_id)
            self._authorize_cancel(ride, actor_id, actor)
            now = self.clock()
            updated = state_machine.cancel(ride, actor, reason, now)
            touched = await self.offers.withdraw(ride_id)

            reassigned = updated.status == models.RIDE_REQUESTED
            if reassigned:
                touched += [
                    a.model_copy(update={"status": models.ASSIGN_REASSIGNED, "reason_code": models.REASON_DRIVER_CANCELLED})
                    for a in await self.store.list_assignments(ride_id)
                    if a.status == models.ASSIGN_ACCEPTED and a.driver_id == ride.driver_id
                ]
                if updated.driver_cancellations > self.settings.MAX_DRIVER_CANCELLATIONS:
                    updated = state_machine.cancel(updated, models.ACTOR_SYSTEM, models.REASON_DRIVER_CANCEL_LIMIT, now)
                    reassigned = False
            await self.store.save(updated, touched)

        self.offers.interrupt(ride_id)
        for a in touched:
            if a.status == models.ASSIGN_EXPIRED:
                await self.publisher.emit(events.OFFER_WITHDRAWN, ride_id, assignment_id=a.id, driver_id=a.driver_id)

        if reassigned:
            logger.info("ride_driver_cancelled: ride=%s driver=%s redispatching", ride_id, ride.driver_id)
            await self.publisher.emit(events.RIDE_DRIVER_CANCELLED, ride_id, driver_id=ride.driver_id, reason=reason)
            self._start(ride_id)
        else:
            if updated.status == models.RIDE_CANCELLED_DRIVER:
                logger.warning("ride_cancelled_mid_trip: ride=%s driver=%s needs resolution", ride_id, ride.driver_id)
            else:
                logger.info("ride_cancelled: ride=%s status=%s reason=%s", ride_id, updated.status, updated.cancellation_reason)
            payload = {"status": updated.status, "reason": updated.cancellation_reason, "actor": actor}
            if error_code is not None:
                payload["error_code"] = error_code
            await self.publisher.emit(events.RIDE_CANCELLED, ride_id, **payload)
        return updated

    # Dispatch workflow

    async def retry_dispatch(self, ride_id: str) -> Ride:
        """Restart dispatch for a ride still in `requested` with no live workflow."""
        ride = await self._get(ride_id)
        if ride.status != models.RIDE_REQUESTED:
            raise ConflictingState(f"ride {ride_id} is not awaiting dispatch", current=ride.status)
        if not self.is_dispatching(ride_id):
            self._start(ride_id)
        return ride

    def is_dispatching(self, ride_id: str) -> bool:
        task = self._tasks.get(ride_id)
        return task is not None and not task.done()

    async def wait_for_dispatch(self, ride_id: str) -> Ride:
        """Wait until the ride's current dispatch workflow finishes."""
        task = self._tasks.get(ride_id)
        if task is not None:
            await asyncio.wait([task])
        return await self._get(ride_id)

    def _start(self, ride_id: str) -> None:
        previous = self._tasks.get(ride_id)
        task = asyncio.create_task(self._run(ride_id, previous), name=f"dispatch-{ride_id}")
        self._tasks[ride_id] = task
        task.add_done_callback(lambda t: self._tasks.pop(ride_id) if self._tasks.get(ride_id) is t else None)

    async def _run(self, ride_id: str, previous: Optional[asyncio.Task]) -> Optional[DispatchOutcome]:
        if previous is not None and not previous.done():
            # the previous workflow is returning after an accept; let it finish first
            await asyncio.wait([previous])
        try:
            return await self._workflow(ride_id)
        except asyncio.CancelledError:
            logger.info("dispatch_task_cancelled: ride=%s", ride_id)
            raise
        except Exception:
            logger.exception("dispatch_failed: ride=%s", ride_id)
            return None

    async def _workflow(self, ride_id: str) -> Optional[DispatchOutcome]:
        max_attempts = self.settings.MAX_DISPATCH_ATTEMPTS
        while True:
            async with self.locks.hold(ride_id):
                ride = await self.store.get_ride(ride_id)
                if ride is None or ride.status != models.RIDE_REQUESTED:
                    return None
                if ride.dispatch_attempts >= max_attempts:
                    break
                ride = state_machine.record_attempt(ride, self.clock())
                await self.store.save(ride)

            try:
                outcome = await self._dispatch_round(ride)
            except NoEligibleDrivers:
                logger.info("no_eligible_drivers: ride=%s attempt=%d", ride_id, ride.dispatch_attempts)
                outcome = DispatchOutcome(OUTCOME_EXHAUSTED)
            if outcome.kind != OUTCOME_EXHAUSTED:
                logger.info("dispatch_finished: ride=%s outcome=%s driver=%s", ride_id, outcome.kind, outcome.driver_id)
                return outcome

            if ride.dispatch_attempts < max_attempts:
                await self.publisher.emit(events.RIDE_REQUEUED, ride_id, attempt=ride.dispatch_attempts)
                await asyncio.sleep(self.settings.RETRY_BACKOFF_SEC)

        failure = ExhaustedRetries(ride_id, max_attempts)
        logger.warning("dispatch_gave_up: ride=%s code=%s attempts=%d", ride_id, failure.error_code, max_attempts)
        try:
            await self.cancel_ride(
                models.ACTOR_SYSTEM, ride_id, models.ACTOR_SYSTEM, models.REASON_NO_DRIVERS, error_code=failure.error_code,
            )
        except ConflictingState:
            logger.info("dispatch_gave_up: ride=%s already closed", ride_id)
        return DispatchOutcome(OUTCOME_EXHAUSTED)

    async def _dispatch_round(self, ride: Ride) -> DispatchOutcome:
        now = self.clock()
        pool = [
            a for a in await self.availability.snapshot(now)
            if a.driver_id not in ride.excluded_driver_ids
            and matching.is_eligible(a, ride.seats, now, self.settings.STALENESS_SEC)
        ]
        origins = {a.driver_id: a.location.as_tuple() for a in pool}
        distances = await self.distance.distances(origins, ride.pickup.as_tuple())
        stats = await self.store.get_stats(origins.keys())
        ranked = matching.rank(
            ride, pool, now,
            staleness_sec=self.settings.STALENESS_SEC,
            weights=self.weights,
            distances=distances,
            stats=stats,
        )
        if not ranked:
            raise NoEligibleDrivers(ride.id)
        logger.info("ranked_candidates: ride=%s drivers=%s", ride.id, [c.driver_id for c in ranked])
        return await self.offers.dispatch(ride.id, ranked)

    # Lifecycle

    async def recover(self) -> int:
        """Expire offers left pending by a previous process and resume dispatch."""
        orphaned = await self.store.pending_assignments()
        for assignment in orphaned:
            async with self.locks.hold(assignment.ride_id):
                current = await self.store.get_assignment(assignment.id)
                if current is not None and current.is_pending:
                    await self.store.save(assignments=[current.model_copy(update={
                        "status": models.ASSIGN_EXPIRED, "reason_code": models.REASON_ORPHANED,
                    })])
        resumed = 0
        last_round = self.settings.MAX_DISPATCH_ATTEMPTS - 1
        for ride in await self.store.rides_with_status(models.RIDE_REQUESTED):
            if self.is_dispatching(ride.id):
                continue
            if ride.dispatch_attempts > last_round:
                # the interrupted round never finished; run it again
                async with self.locks.hold(ride.id):
                    current = await self._get(ride.id)
                    if current.dispatch_attempts > last_round:
                        await self.store.save(current.model_copy(update={"dispatch_attempts": max(last_round, 0)}))
            self._start(ride.id)
            resumed += 1
        logger.info("recover: expired_offers=%d resumed_rides=%d", len(orphaned), resumed)
        return resumed

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # Helpers

    async def _get(self, ride_id: str) -> Ride:
        ride = await self.store.get_ride(ride_id)
        if ride is None:
            raise NotFound("ride", ride_id)
        return ride

    async def _authorize_reader(self, ride: Ride, actor_id: str) -> None:
        if actor_id in (ride.passenger_id, ride.driver_id, models.ACTOR_SYSTEM):
            return
        offered = await self.store.list_assignments(ride.id)
        if any(a.driver_id == actor_id for a in offered):
            return
        raise Forbidden("actor is not part of this ride", details={"ride_id": ride.id})

    @staticmethod
    def _authorize_cancel(ride: Ride, actor_id: str, actor: str) -> None:
        if actor == models.ACTOR_PASSENGER and actor_id != ride.passenger_id:
            raise Forbidden("only the passenger can cancel as passenger", details={"ride_id": ride.id})
        if actor == models.ACTOR_DRIVER and (ride.driver_id is None or actor_id != ride.driver_id):
            raise Forbidden("only the assigned driver can cancel as driver", details={"ride_id": ride.id})
        if actor == models.ACTOR_SYSTEM and actor_id != models.ACTOR_SYSTEM:
            raise Forbidden("system cancellations are internal", details={"ride_id": ride.id})
