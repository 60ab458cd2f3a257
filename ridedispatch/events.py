"""
State-change events for real-time clients.

Delivery is at-least-once: an event may be published more than once and
consumers de-duplicate by `Event.id`. Publishing happens after the state
change is committed; a failed publish is logged and never undoes it.
"""

from datetime import datetime
from typing import Any, Optional
import json
import logging
import uuid

from pydantic import BaseModel, Field

from .clock import utcnow

logger = logging.getLogger(__name__)

DRIVER_AVAILABILITY = "driver.availability"
OFFER_CREATED = "offer.created"
OFFER_ACCEPTED = "offer.accepted"
OFFER_DECLINED = "offer.declined"
OFFER_EXPIRED = "offer.expired"
OFFER_WITHDRAWN = "offer.withdrawn"
RIDE_REQUESTED = "ride.requested"
RIDE_DRIVER_ASSIGNED = "ride.driver_assigned"
RIDE_DRIVER_CANCELLED = "ride.driver_cancelled"
RIDE_CANCELLED = "ride.cancelled"
RIDE_REQUEUED = "ride.requeued"


def ride_progress(status: str) -> str:
    """Event type for a driver-reported progress step, e.g. ride.enroute_pickup."""
    return f"ride.{status}"


class Event(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    ride_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)


class EventPublisher:
    async def publish(self, event: Event) -> None:
        raise NotImplementedError

    async def emit(self, type: str, ride_id: Optional[str] = None, **payload) -> Event:
        event = Event(type=type, ride_id=ride_id, payload=payload)
        try:
            await self.publish(event)
        except Exception:
            logger.exception("event_publish_failed: type=%s ride=%s event=%s", type, ride_id, event.id)
        return event


class MemoryEventPublisher(EventPublisher):
    def __init__(self):
        self.events: list[Event] = []

    async def publish(self, event):
        self.events.append(event)

    def of_type(self, type: str) -> list[Event]:
        return [e for e in self.events if e.type == type]


class RedisEventPublisher(EventPublisher):
    def __init__(self, redis, channel: str):
        self.redis = redis
        self.channel = channel

    async def publish(self, event):
        await self.redis.publish(self.channel, json.dumps(event.model_dump(mode="json")))
        logger.debug("event_published: type=%s ride=%s event=%s", event.type, event.ride_id, event.id)
