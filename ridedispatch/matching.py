"""
Matching policy.

`rank` is a pure function: it filters the candidate pool down to eligible
drivers and orders them by a weighted score. It performs no I/O; distances
and driver statistics are resolved by the caller and passed in.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional

from . import models
from .distance import haversine_km
from .schemas import DriverAvailability, DriverStats, Ride


@dataclass(frozen=True)
class MatchWeights:
    distance: float = 0.6
    idle: float = 0.2
    reliability: float = 0.2
    radius_km: float = 10.0
    idle_cap_sec: float = 1800.0
    max_candidates: int = 10

    @classmethod
    def from_settings(cls, settings) -> "MatchWeights":
        return cls(
            distance=settings.WEIGHT_DISTANCE,
            idle=settings.WEIGHT_IDLE,
            reliability=settings.WEIGHT_RELIABILITY,
            radius_km=settings.MATCH_RADIUS_KM,
            idle_cap_sec=settings.IDLE_CAP_SEC,
            max_candidates=settings.MAX_CANDIDATES,
        )


@dataclass(frozen=True)
class RankedCandidate:
    driver_id: str
    score: float
    distance_km: float


def is_eligible(availability: DriverAvailability, seats: int, now: datetime, staleness_sec: float) -> bool:
    """Available, enough seats, a known position and a fresh heartbeat."""
    if availability.status != models.DRIVER_AVAILABLE:
        return False
    if availability.capacity < seats:
        return False
    if availability.location is None:
        return False
    return (now - availability.last_heartbeat).total_seconds() <= staleness_sec


def idle_score(stats: Optional[DriverStats], now: datetime, cap_sec: float) -> float:
    # no completed ride on record counts as fully idle
    if stats is None or stats.last_completed_at is None or cap_sec <= 0:
        return 1.0
    idle = (now - stats.last_completed_at).total_seconds()
    return max(0.0, min(1.0, idle / cap_sec))


def rank(
    ride: Ride,
    pool: Iterable[DriverAvailability],
    now: datetime,
    *,
    staleness_sec: float,
    weights: MatchWeights = MatchWeights(),
    distances: Optional[Mapping[str, float]] = None,
    stats: Optional[Mapping[str, DriverStats]] = None,
    exclude: Iterable[str] = (),
) -> list[RankedCandidate]:
    """Rank eligible drivers for `ride`, best first.

    Drivers failing a filter are dropped, not scored. A driver missing from
    `distances` is measured in a straight line. Ties are broken by driver id
    so the order is reproducible. An empty list means no match.
    """
    distances = distances or {}
    stats = stats or {}
    excluded = set(exclude) | set(ride.excluded_driver_ids)
    pickup = ride.pickup.as_tuple()

    ranked = []
    for availability in pool:
        if availability.driver_id in excluded:
            continue
        if not is_eligible(availability, ride.seats, now, staleness_sec):
            continue
        dist = distances.get(availability.driver_id)
        if dist is None:
            dist = haversine_km(availability.location.as_tuple(), pickup)
        if dist > weights.radius_km:
            continue

        driver_stats = stats.get(availability.driver_id)
        distance_part = 1.0 - dist / weights.radius_km if weights.radius_km > 0 else 0.0
        reliability_part = driver_stats.reliability if driver_stats else 0.5
        score = (
            weights.distance * distance_part
            + weights.idle * idle_score(driver_stats, now, weights.idle_cap_sec)
            + weights.reliability * reliability_part
        )
        ranked.append(RankedCandidate(availability.driver_id, round(score, 6), dist))

    ranked.sort(key=lambda c: (-c.score, c.driver_id))
    return ranked[: weights.max_candidates]
