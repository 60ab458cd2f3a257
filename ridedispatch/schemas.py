from pydantic import BaseModel, Field, field_validator
from typing import Optional, Literal
from datetime import datetime

from . import models


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lng: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    description: Optional[str] = Field(None, max_length=255)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


class FareLine(BaseModel):
    label: str
    amount_cents: int


class FareQuote(BaseModel):
    amount_cents: int = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    breakdown: list[FareLine] = Field(default_factory=list)
    surge_multiplier: float = 1.0


class Ride(BaseModel):
    id: str
    passenger_id: str
    driver_id: Optional[str] = None
    status: str = models.RIDE_REQUESTED
    pickup: Location
    dropoff: Location
    seats: int = 1
    fare_quote: Optional[FareQuote] = None
    fare_actual_cents: Optional[int] = None
    surge_multiplier: float = 1.0
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    enroute_at: Optional[datetime] = None
    onboard_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    dispatch_attempts: int = 0
    driver_cancellations: int = 0
    excluded_driver_ids: list[str] = Field(default_factory=list)
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in models.RIDE_TERMINAL


class Assignment(BaseModel):
    id: str
    ride_id: str
    driver_id: str
    status: str = models.ASSIGN_PENDING
    score: float = 0.0
    reason_code: Optional[str] = None
    created_at: datetime
    deadline_at: datetime
    responded_at: Optional[datetime] = None
    eta_minutes: Optional[int] = None

    @property
    def is_pending(self) -> bool:
        return self.status == models.ASSIGN_PENDING


class DriverAvailability(BaseModel):
    driver_id: str
    status: Literal["available", "unavailable"] = models.DRIVER_AVAILABLE
    capacity: int = 4
    location: Optional[Location] = None
    last_heartbeat: datetime


class DriverStats(BaseModel):
    driver_id: str
    offers: int = 0
    accepted: int = 0
    declined: int = 0
    expired: int = 0
    late_responses: int = 0
    last_completed_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None

    @property
    def acceptance_rate(self) -> float:
        if self.offers == 0:
            return 0.0
        return self.accepted / self.offers

    @property
    def reliability(self) -> float:
        """Smoothed acceptance rate in [0, 1], lowered by timeouts and late answers.

        A driver with no history scores 0.5.
        """
        denominator = self.offers + 2
        score = (self.accepted + 1) / denominator
        score -= 0.5 * (self.expired + self.late_responses) / denominator
        return max(0.0, min(1.0, score))


# Request payloads

class HeartbeatIn(BaseModel):
    status: Optional[Literal["available", "unavailable"]] = None
    location: Optional[Location] = None
    capacity: Optional[int] = Field(None, ge=1, le=12)


class RideCreate(BaseModel):
    pickup: Location
    dropoff: Location
    seats: int = Field(1, ge=1, le=12)

    @field_validator("dropoff")
    @classmethod
    def validate_dropoff(cls, v, info):
        pickup = info.data.get("pickup")
        if pickup is not None and pickup.as_tuple() == v.as_tuple():
            raise ValueError("dropoff must differ from pickup")
        return v


class OfferResponseIn(BaseModel):
    eta_minutes: Optional[int] = Field(None, ge=1, le=240)


class ProgressIn(BaseModel):
    event: Literal["enroute_pickup", "passenger_onboard", "completed"]


class CancelIn(BaseModel):
    actor: Literal["passenger", "driver"]
    reason: Optional[str] = Field(None, max_length=255)


class NearbyDriver(BaseModel):
    driver_id: str
    distance_km: float
    capacity: int
    location: Location
