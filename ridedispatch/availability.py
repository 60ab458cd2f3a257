"""
Driver availability store.

Holds the latest heartbeat per driver. Records are overwritten on every
heartbeat (last write wins) and are treated as expired, not deleted, once
older than the staleness window.
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from . import models
from .cache import DRIVERS_GEO_KEY, driver_key
from .distance import haversine_km
from .schemas import DriverAvailability, HeartbeatIn, Location

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 4


def is_fresh(availability: DriverAvailability, now: datetime, staleness_sec: float) -> bool:
    return (now - availability.last_heartbeat).total_seconds() <= staleness_sec


def merge_heartbeat(previous: Optional[DriverAvailability], driver_id: str, update: HeartbeatIn, now: datetime) -> DriverAvailability:
    """Fields missing from the heartbeat keep their previous value."""
    return DriverAvailability(
        driver_id=driver_id,
        status=update.status or (previous.status if previous else models.DRIVER_AVAILABLE),
        capacity=update.capacity or (previous.capacity if previous else DEFAULT_CAPACITY),
        location=update.location or (previous.location if previous else None),
        last_heartbeat=now,
    )


class AvailabilityStore:
    def __init__(self, staleness_sec: float):
        self.staleness_sec = staleness_sec

    async def heartbeat(self, driver_id: str, update: HeartbeatIn, now: datetime) -> DriverAvailability:
        raise NotImplementedError

    async def get(self, driver_id: str, now: datetime) -> Optional[DriverAvailability]:
        raise NotImplementedError

    async def snapshot(self, now: datetime) -> list[DriverAvailability]:
        """All fresh, available drivers that have reported a location."""
        raise NotImplementedError

    async def nearby(self, location: Location, radius_km: float, limit: int, now: datetime) -> list[tuple[DriverAvailability, float]]:
        found = []
        for availability in await self.snapshot(now):
            dist = haversine_km(location.as_tuple(), availability.location.as_tuple())
            if dist <= radius_km:
                found.append((availability, dist))
        found.sort(key=lambda item: (item[1], item[0].driver_id))
        return found[:limit]

    async def prune(self) -> int:
        return 0


class MemoryAvailabilityStore(AvailabilityStore):
    def __init__(self, staleness_sec: float):
        super().__init__(staleness_sec)
        self._records: dict[str, DriverAvailability] = {}

    async def heartbeat(self, driver_id, update, now):
        record = merge_heartbeat(self._records.get(driver_id), driver_id, update, now)
        self._records[driver_id] = record
        return record

    async def get(self, driver_id, now):
        record = self._records.get(driver_id)
        if record is None or not is_fresh(record, now, self.staleness_sec):
            return None
        return record

    async def snapshot(self, now):
        return [
            r for r in self._records.values()
            if r.status == models.DRIVER_AVAILABLE
            and r.location is not None
            and is_fresh(r, now, self.staleness_sec)
        ]


class RedisAvailabilityStore(AvailabilityStore):
    """One hash per driver plus a geo index of available drivers.

    The key TTL only reclaims memory; freshness is decided from the stored
    heartbeat timestamp.
    """

    def __init__(self, redis, staleness_sec: float, ttl_sec: int):
        super().__init__(staleness_sec)
        self.redis = redis
        self.ttl_sec = ttl_sec

    async def _load(self, driver_id: str) -> Optional[DriverAvailability]:
        data = await self.redis.hgetall(driver_key(driver_id))
        if not data:
            return None
        try:
            location = None
            if data.get("lat") not in (None, "") and data.get("lng") not in (None, ""):
                location = Location(lat=float(data["lat"]), lng=float(data["lng"]), description=data.get("description") or None)
            return DriverAvailability(
                driver_id=driver_id,
                status=data.get("status", models.DRIVER_AVAILABLE),
                capacity=int(data.get("capacity", DEFAULT_CAPACITY)),
                location=location,
                last_heartbeat=datetime.fromtimestamp(float(data["last_heartbeat"]), tz=timezone.utc),
            )
        except (KeyError, ValueError) as e:
            logger.warning("availability_parse_failed: driver=%s error=%s", driver_id, e)
            return None

    async def heartbeat(self, driver_id, update, now):
        record = merge_heartbeat(await self._load(driver_id), driver_id, update, now)
        mapping = {
            "status": record.status,
            "capacity": record.capacity,
            "last_heartbeat": record.last_heartbeat.timestamp(),
            "lat": record.location.lat if record.location else "",
            "lng": record.location.lng if record.location else "",
            "description": (record.location.description or "") if record.location else "",
        }
        key = driver_key(driver_id)
        await self.redis.hset(key, mapping=mapping)
        await self.redis.expire(key, self.ttl_sec)
        if record.status == models.DRIVER_AVAILABLE and record.location is not None:
            await self.redis.execute_command("GEOADD", DRIVERS_GEO_KEY, record.location.lng, record.location.lat, driver_id)
        else:
            await self.redis.zrem(DRIVERS_GEO_KEY, driver_id)
        logger.debug("heartbeat_stored: driver=%s status=%s capacity=%s", driver_id, record.status, record.capacity)
        return record

    async def get(self, driver_id, now):
        record = await self._load(driver_id)
        if record is None or not is_fresh(record, now, self.staleness_sec):
            return None
        return record

    async def snapshot(self, now):
        records = []
        for driver_id in await self.redis.zrange(DRIVERS_GEO_KEY, 0, -1):
            record = await self._load(driver_id)
            if (
                record is not None
                and record.status == models.DRIVER_AVAILABLE
                and record.location is not None
                and is_fresh(record, now, self.staleness_sec)
            ):
                records.append(record)
        return records

    async def nearby(self, location, radius_km, limit, now):
        # GEORADIUS: key lon lat radius km WITHDIST ASC
        try:
            res = await self.redis.execute_command(
                "GEORADIUS", DRIVERS_GEO_KEY, location.lng, location.lat, radius_km, "km", "WITHDIST", "ASC"
            )
        except Exception:
            logger.exception("nearby: redis GEORADIUS failed, scanning snapshot")
            return await super().nearby(location, radius_km, limit, now)
        found = []
        for member, _ in res or []:
            driver_id = member.decode() if isinstance(member, bytes) else str(member)
            record = await self.get(driver_id, now)
            if record is None or record.status != models.DRIVER_AVAILABLE or record.location is None:
                continue
            found.append((record, haversine_km(location.as_tuple(), record.location.as_tuple())))
            if len(found) >= limit:
                break
        return found

    async def prune(self) -> int:
        """Drop geo index members whose hash has expired."""
        removed = 0
        for driver_id in await self.redis.zrange(DRIVERS_GEO_KEY, 0, -1):
            if not await self.redis.exists(driver_key(driver_id)):
                await self.redis.zrem(DRIVERS_GEO_KEY, driver_id)
                removed += 1
        if removed:
            logger.info("prune_availability: removed %d expired drivers from geo index", removed)
        return removed
