from fastapi import FastAPI
from pydantic import BaseModel
import logging

from .config import settings
from .distance import haversine_km
from .logging_setup import configure_logging
from .schemas import Location

# ensure logging is configured when run standalone
configure_logging("eta.log")
logger = logging.getLogger(__name__)

app = FastAPI(title="Distance/ETA Service")


class Origin(Location):
    id: str


class DistanceRequest(BaseModel):
    """Distances from many origins to one destination."""
    destination: Location
    origins: list[Origin]


class DistanceResult(BaseModel):
    id: str
    distance_km: float
    eta_minutes: float


class DistanceResponse(BaseModel):
    results: list[DistanceResult]


def estimate(origin: Origin, destination: Location) -> DistanceResult:
    """Road distance approximated as great-circle distance times a detour factor."""
    km = haversine_km(origin.as_tuple(), destination.as_tuple()) * settings.ROAD_FACTOR
    minutes = km / settings.AVERAGE_SPEED_KMH * 60.0
    return DistanceResult(id=origin.id, distance_km=round(km, 3), eta_minutes=round(minutes, 1))


@app.post("/distance", response_model=DistanceResponse)
async def distance(req: DistanceRequest):
    logger.info("distance_request: origins=%d destination=(%s,%s)", len(req.origins), req.destination.lat, req.destination.lng)
    return DistanceResponse(results=[estimate(origin, req.destination) for origin in req.origins])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001)
