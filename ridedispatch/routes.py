from fastapi import APIRouter, Depends, Header, Query, Request
from typing import Optional
import logging

from . import models, schemas
from .coordinator import DispatchCoordinator
from .errors import Forbidden

logger = logging.getLogger(__name__)

router = APIRouter()


def get_coordinator(request: Request) -> DispatchCoordinator:
    return request.app.state.coordinator


def get_actor_id(x_actor_id: str = Header(..., min_length=1, max_length=64)) -> str:
    """Authenticated caller id, set by the gateway in front of this service."""
    if x_actor_id == models.ACTOR_SYSTEM:
        raise Forbidden("reserved actor id")
    return x_actor_id


# Driver operations

@router.post("/drivers/heartbeat", response_model=schemas.DriverAvailability)
async def send_heartbeat(payload: schemas.HeartbeatIn, actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    return await coordinator.send_heartbeat(actor_id, payload)


@router.get("/drivers/nearby", response_model=list[schemas.NearbyDriver])
async def nearby_drivers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(3.0, ge=0.1, le=25),
    limit: int = Query(20, ge=1, le=100),
    actor_id: str = Depends(get_actor_id),
    coordinator=Depends(get_coordinator),
):
    return await coordinator.nearby_drivers({"lat": lat, "lng": lng}, radius_km, limit)


@router.get("/drivers/offers", response_model=list[schemas.Assignment])
async def list_offers(actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    return await coordinator.list_offers(actor_id)


@router.post("/offers/{assignment_id}/accept", response_model=schemas.Assignment)
async def accept_offer(
    assignment_id: str,
    payload: Optional[schemas.OfferResponseIn] = None,
    actor_id: str = Depends(get_actor_id),
    coordinator=Depends(get_coordinator),
):
    eta = payload.eta_minutes if payload else None
    logger.info("accept_offer: driver=%s assignment=%s", actor_id, assignment_id)
    return await coordinator.accept_offer(actor_id, assignment_id, eta)


@router.post("/offers/{assignment_id}/reject", response_model=schemas.Assignment)
async def reject_offer(assignment_id: str, actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    logger.info("reject_offer: driver=%s assignment=%s", actor_id, assignment_id)
    return await coordinator.reject_offer(actor_id, assignment_id)


@router.post("/rides/{ride_id}/progress", response_model=schemas.Ride)
async def report_progress(ride_id: str, payload: schemas.ProgressIn, actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    return await coordinator.report_progress(actor_id, ride_id, payload.event)


# Passenger operations

@router.post("/rides", response_model=schemas.Ride, status_code=201)
async def request_ride(
    payload: schemas.RideCreate,
    idempotency_key: Optional[str] = Header(None, max_length=128),
    actor_id: str = Depends(get_actor_id),
    coordinator=Depends(get_coordinator),
):
    return await coordinator.request_ride(actor_id, payload, idempotency_key)


@router.get("/rides/{ride_id}", response_model=schemas.Ride)
async def get_ride(ride_id: str, actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    return await coordinator.get_ride(ride_id, actor_id)


@router.get("/rides/{ride_id}/assignments", response_model=list[schemas.Assignment])
async def list_assignments(ride_id: str, actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    return await coordinator.list_assignments(ride_id, actor_id)


@router.post("/rides/{ride_id}/cancel", response_model=schemas.Ride)
async def cancel_ride(ride_id: str, payload: schemas.CancelIn, actor_id: str = Depends(get_actor_id), coordinator=Depends(get_coordinator)):
    logger.info("cancel_ride: ride=%s actor=%s as=%s", ride_id, actor_id, payload.actor)
    return await coordinator.cancel_ride(actor_id, ride_id, payload.actor, payload.reason)
