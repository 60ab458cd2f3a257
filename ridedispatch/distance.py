from math import radians, cos, sin, asin, sqrt
from typing import Tuple, Mapping
import logging

import httpx

logger = logging.getLogger(__name__)

Coord = Tuple[float, float]


def haversine_km(a: Coord, b: Coord) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    # convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(radians, [lon1, lat1, lon2, lat2])
    # haversine
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    km = 6371 * c
    return km


class StraightLineDistance:
    """Great-circle distance; always available."""

    async def distances(self, origins: Mapping[str, Coord], destination: Coord) -> dict[str, float]:
        return {key: haversine_km(origin, destination) for key, origin in origins.items()}


class HttpDistanceProvider:
    """Route distances from the ETA service.

    Any failure of the service falls back to straight-line distance for the
    whole batch, so matching never stalls on it.
    """

    def __init__(self, base_url: str, timeout: float = 2.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._fallback = StraightLineDistance()

    async def _post(self, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(f"{self.base_url}/distance", json=payload, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(f"{self.base_url}/distance", json=payload, timeout=self.timeout)

    async def distances(self, origins: Mapping[str, Coord], destination: Coord) -> dict[str, float]:
        if not origins:
            return {}
        payload = {
            "destination": {"lat": destination[0], "lng": destination[1]},
            "origins": [{"id": key, "lat": lat, "lng": lng} for key, (lat, lng) in origins.items()],
        }
        try:
            resp = await self._post(payload)
            resp.raise_for_status()
            results = {item["id"]: float(item["distance_km"]) for item in resp.json()["results"]}
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning("distance_lookup_failed: origins=%d error=%s; using straight-line", len(origins), e)
            return await self._fallback.distances(origins, destination)
        missing = {key: origin for key, origin in origins.items() if key not in results}
        if missing:
            results.update(await self._fallback.distances(missing, destination))
        return results
