"""Builders shared by the engine tests."""

import asyncio
from datetime import timedelta

from ridedispatch.availability import MemoryAvailabilityStore
from ridedispatch.clock import utcnow
from ridedispatch.config import Settings
from ridedispatch.coordinator import DispatchCoordinator
from ridedispatch.distance import StraightLineDistance
from ridedispatch.events import MemoryEventPublisher
from ridedispatch.locks import KeyedLocks
from ridedispatch.offers import OfferManager
from ridedispatch.schemas import HeartbeatIn, Location, Ride
from ridedispatch.store import MemoryRideStore

PICKUP = Location(lat=27.70, lng=85.32)
DROPOFF = Location(lat=27.72, lng=85.34)
# roughly 1 km of latitude
KM = 0.008993


def north_of_pickup(km: float) -> Location:
    return Location(lat=PICKUP.lat + km * KM, lng=PICKUP.lng)


def make_settings(**overrides) -> Settings:
    values = dict(
        USE_REDIS=False,
        OFFER_TIMEOUT_SEC=5.0,
        RETRY_BACKOFF_SEC=0.01,
        MAX_DISPATCH_ATTEMPTS=3,
        STALENESS_SEC=60.0,
        MATCH_RADIUS_KM=10.0,
        MAX_DRIVER_CANCELLATIONS=2,
    )
    values.update(overrides)
    return Settings(**values)


def make_ride(**overrides) -> Ride:
    now = utcnow()
    values = dict(
        id="ride-1",
        passenger_id="passenger-1",
        pickup=PICKUP,
        dropoff=DROPOFF,
        seats=1,
        requested_at=now,
        updated_at=now,
    )
    values.update(overrides)
    return Ride(**values)


class Engine:
    """Coordinator wired to in-memory collaborators."""

    def __init__(self, **overrides):
        self.settings = make_settings(**overrides)
        self.store = MemoryRideStore()
        self.availability = MemoryAvailabilityStore(self.settings.STALENESS_SEC)
        self.publisher = MemoryEventPublisher()
        self.offers = OfferManager(self.store, KeyedLocks(), self.publisher, self.settings.OFFER_TIMEOUT_SEC)
        self.coordinator = DispatchCoordinator(
            self.store, self.availability, self.offers, self.publisher, StraightLineDistance(), self.settings,
        )

    async def driver(self, driver_id: str, km: float, capacity: int = 4, age_sec: float = 0.0):
        update = HeartbeatIn(status="available", location=north_of_pickup(km), capacity=capacity)
        return await self.availability.heartbeat(driver_id, update, utcnow() - timedelta(seconds=age_sec))

    async def request(self, passenger_id: str = "passenger-1", seats: int = 1) -> Ride:
        return await self.coordinator.request_ride(
            passenger_id, {"pickup": PICKUP.model_dump(), "dropoff": DROPOFF.model_dump(), "seats": seats},
        )

    async def wait_for_offer(self, driver_id: str, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            offers = await self.coordinator.list_offers(driver_id)
            if offers:
                return offers[0]
            await asyncio.sleep(0.005)
        raise AssertionError(f"no offer reached {driver_id}")
