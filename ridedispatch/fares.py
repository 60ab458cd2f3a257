"""Fare quotes in minor currency units."""

from .distance import haversine_km
from .schemas import FareLine, FareQuote, Location


def surge_multiplier(open_requests: int, available_drivers: int, max_surge: float) -> float:
    """1.0 while supply covers demand, rising by half the excess ratio, capped."""
    if open_requests <= available_drivers:
        return 1.0
    if available_drivers == 0:
        return max_surge
    ratio = open_requests / available_drivers
    return round(min(max_surge, 1.0 + 0.5 * (ratio - 1.0)), 2)


def quote(pickup: Location, dropoff: Location, settings, surge: float = 1.0) -> FareQuote:
    km = haversine_km(pickup.as_tuple(), dropoff.as_tuple()) * settings.ROAD_FACTOR
    base = settings.BASE_FARE_CENTS
    distance_part = int(round(km * settings.PER_KM_CENTS))
    subtotal = max(base + distance_part, settings.MINIMUM_FARE_CENTS)
    breakdown = [
        FareLine(label="Base fare", amount_cents=base),
        FareLine(label=f"Distance ({km:.1f} km)", amount_cents=distance_part),
    ]
    if subtotal > base + distance_part:
        breakdown.append(FareLine(label="Minimum fare adjustment", amount_cents=subtotal - base - distance_part))
    total = int(round(subtotal * surge))
    if total > subtotal:
        breakdown.append(FareLine(label=f"Surge x{surge:.2f}", amount_cents=total - subtotal))
    return FareQuote(amount_cents=total, currency=settings.CURRENCY, breakdown=breakdown, surge_multiplier=surge)
