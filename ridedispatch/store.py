"""
Persistence for rides, assignments and driver statistics.

Entities are kept in separate tables keyed by id and relate to each other
only through ids. `save` writes a ride together with the assignments it
touched in a single transaction, which is what keeps a transition
all-or-nothing. Callers serialize writes per ride (see `locks.KeyedLocks`).
"""

from datetime import datetime, timezone
from typing import Iterable, Optional
import logging

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from . import models
from .schemas import Assignment, DriverStats, Ride

logger = logging.getLogger(__name__)

STAT_COUNTERS = ("offers", "accepted", "declined", "expired", "late_responses")


class RideStore:
    async def add_ride(self, ride: Ride, idempotency_key: Optional[str] = None) -> str:
        """Insert a new ride, claiming `idempotency_key` in the same step.

        Returns the id of the ride that owns the key. When another request
        claimed it first, nothing is inserted and that ride's id comes back.
        """
        raise NotImplementedError

    async def get_ride(self, ride_id: str) -> Optional[Ride]:
        raise NotImplementedError

    async def save(self, ride: Optional[Ride] = None, assignments: Iterable[Assignment] = ()) -> None:
        """Insert or update the ride and assignments atomically."""
        raise NotImplementedError

    async def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        raise NotImplementedError

    async def list_assignments(self, ride_id: str) -> list[Assignment]:
        raise NotImplementedError

    async def pending_assignments(self, *, ride_id: str | None = None, driver_id: str | None = None) -> list[Assignment]:
        raise NotImplementedError

    async def rides_with_status(self, status: str) -> list[Ride]:
        raise NotImplementedError

    async def active_ride_for_driver(self, driver_id: str) -> Optional[Ride]:
        raise NotImplementedError

    async def get_stats(self, driver_ids: Iterable[str]) -> dict[str, DriverStats]:
        raise NotImplementedError

    async def bump_stats(self, driver_id: str, now: datetime, last_completed: bool = False, **increments: int) -> None:
        raise NotImplementedError

    async def get_idempotent(self, key: str) -> Optional[str]:
        raise NotImplementedError


class MemoryRideStore(RideStore):
    """Dict-per-entity store for tests and single-process deployments."""

    def __init__(self):
        self.rides: dict[str, Ride] = {}
        self.assignments: dict[str, Assignment] = {}
        self.stats: dict[str, DriverStats] = {}
        self.idempotency: dict[str, str] = {}

    async def add_ride(self, ride, idempotency_key=None):
        if idempotency_key is not None:
            owner = self.idempotency.setdefault(idempotency_key, ride.id)
            if owner != ride.id:
                return owner
        self.rides[ride.id] = ride
        return ride.id

    async def get_ride(self, ride_id):
        return self.rides.get(ride_id)

    async def save(self, ride=None, assignments=()):
        if ride is not None:
            self.rides[ride.id] = ride
        for assignment in assignments:
            self.assignments[assignment.id] = assignment

    async def get_assignment(self, assignment_id):
        return self.assignments.get(assignment_id)

    async def list_assignments(self, ride_id):
        found = [a for a in self.assignments.values() if a.ride_id == ride_id]
        return sorted(found, key=lambda a: (a.created_at, a.id))

    async def pending_assignments(self, *, ride_id=None, driver_id=None):
        return [
            a for a in self.assignments.values()
            if a.is_pending
            and (ride_id is None or a.ride_id == ride_id)
            and (driver_id is None or a.driver_id == driver_id)
        ]

    async def rides_with_status(self, status):
        return [r for r in self.rides.values() if r.status == status]

    async def active_ride_for_driver(self, driver_id):
        for ride in self.rides.values():
            if ride.driver_id == driver_id and not ride.is_terminal:
                return ride
        return None

    async def get_stats(self, driver_ids):
        return {d: self.stats[d] for d in driver_ids if d in self.stats}

    async def bump_stats(self, driver_id, now, last_completed=False, **increments):
        current = self.stats.get(driver_id) or DriverStats(driver_id=driver_id)
        changes = {k: getattr(current, k) + v for k, v in increments.items()}
        changes["last_active_at"] = now
        if last_completed:
            changes["last_completed_at"] = now
        self.stats[driver_id] = current.model_copy(update=changes)

    async def get_idempotent(self, key):
        return self.idempotency.get(key)


def _aware(values: dict) -> dict:
    # sqlite hands back naive datetimes even for timezone=True columns
    return {
        k: v.replace(tzinfo=timezone.utc) if isinstance(v, datetime) and v.tzinfo is None else v
        for k, v in values.items()
    }


class SqlRideStore(RideStore):
    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @staticmethod
    def _ride(row) -> Ride:
        return Ride.model_validate(_aware(dict(row._mapping)))

    @staticmethod
    def _assignment(row) -> Assignment:
        return Assignment.model_validate(_aware(dict(row._mapping)))

    async def add_ride(self, ride, idempotency_key=None):
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(models.rides).values(**ride.model_dump()))
                if idempotency_key is not None:
                    await conn.execute(insert(models.idempotency_keys).values(
                        key=idempotency_key, ride_id=ride.id, created_at=ride.requested_at,
                    ))
        except IntegrityError:
            owner = await self.get_idempotent(idempotency_key) if idempotency_key is not None else None
            if owner is None:
                raise
            logger.info("idempotency_key_exists: key=%s ride=%s", idempotency_key, owner)
            return owner
        logger.debug("ride_inserted: ride=%s", ride.id)
        return ride.id

    async def get_ride(self, ride_id):
        async with self.engine.connect() as conn:
            row = (await conn.execute(select(models.rides).where(models.rides.c.id == ride_id))).first()
        return self._ride(row) if row else None

    async def save(self, ride=None, assignments=()):
        async with self.engine.begin() as conn:
            if ride is not None:
                values = ride.model_dump()
                res = await conn.execute(update(models.rides).where(models.rides.c.id == ride.id).values(**values))
                if res.rowcount == 0:
                    await conn.execute(insert(models.rides).values(**values))
            for assignment in assignments:
                values = assignment.model_dump()
                res = await conn.execute(
                    update(models.assignments).where(models.assignments.c.id == assignment.id).values(**values)
                )
                if res.rowcount == 0:
                    await conn.execute(insert(models.assignments).values(**values))

    async def get_assignment(self, assignment_id):
        async with self.engine.connect() as conn:
            sel = select(models.assignments).where(models.assignments.c.id == assignment_id)
            row = (await conn.execute(sel)).first()
        return self._assignment(row) if row else None

    async def list_assignments(self, ride_id):
        sel = (
            select(models.assignments)
            .where(models.assignments.c.ride_id == ride_id)
            .order_by(models.assignments.c.created_at, models.assignments.c.id)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(sel)).all()
        return [self._assignment(r) for r in rows]

    async def pending_assignments(self, *, ride_id=None, driver_id=None):
        sel = select(models.assignments).where(models.assignments.c.status == models.ASSIGN_PENDING)
        if ride_id is not None:
            sel = sel.where(models.assignments.c.ride_id == ride_id)
        if driver_id is not None:
            sel = sel.where(models.assignments.c.driver_id == driver_id)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(sel)).all()
        return [self._assignment(r) for r in rows]

    async def rides_with_status(self, status):
        async with self.engine.connect() as conn:
            rows = (await conn.execute(select(models.rides).where(models.rides.c.status == status))).all()
        return [self._ride(r) for r in rows]

    async def active_ride_for_driver(self, driver_id):
        sel = (
            select(models.rides)
            .where(models.rides.c.driver_id == driver_id)
            .where(models.rides.c.status.not_in(sorted(models.RIDE_TERMINAL)))
            .limit(1)
        )
        async with self.engine.connect() as conn:
            row = (await conn.execute(sel)).first()
        return self._ride(row) if row else None

    async def get_stats(self, driver_ids):
        driver_ids = list(driver_ids)
        if not driver_ids:
            return {}
        sel = select(models.driver_stats).where(models.driver_stats.c.driver_id.in_(driver_ids))
        async with self.engine.connect() as conn:
            rows = (await conn.execute(sel)).all()
        return {r.driver_id: DriverStats.model_validate(_aware(dict(r._mapping))) for r in rows}

    async def bump_stats(self, driver_id, now, last_completed=False, **increments):
        table = models.driver_stats
        changes = {k: table.c[k] + v for k, v in increments.items()}
        changes["last_active_at"] = now
        if last_completed:
            changes["last_completed_at"] = now
        stmt = update(table).where(table.c.driver_id == driver_id).values(**changes)
        async with self.engine.begin() as conn:
            res = await conn.execute(stmt)
            if res.rowcount:
                return
        initial = {k: increments.get(k, 0) for k in STAT_COUNTERS}
        try:
            async with self.engine.begin() as conn:
                await conn.execute(insert(table).values(
                    driver_id=driver_id,
                    last_active_at=now,
                    last_completed_at=now if last_completed else None,
                    **initial,
                ))
        except IntegrityError:
            # another writer created the row first
            async with self.engine.begin() as conn:
                await conn.execute(stmt)

    async def get_idempotent(self, key):
        sel = select(models.idempotency_keys.c.ride_id).where(models.idempotency_keys.c.key == key)
        async with self.engine.connect() as conn:
            return (await conn.execute(sel)).scalar_one_or_none()

