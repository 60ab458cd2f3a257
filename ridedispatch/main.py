from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import logging
import time
import uuid

from .availability import MemoryAvailabilityStore, RedisAvailabilityStore
from .cache import create_redis, ping
from .config import settings
from .coordinator import DispatchCoordinator
from .distance import HttpDistanceProvider, StraightLineDistance
from .errors import DispatchError, dispatch_error_handler, validation_exception_handler
from .events import MemoryEventPublisher, RedisEventPublisher
from .locks import KeyedLocks
from .logging_setup import configure_logging
from .offers import OfferManager
from .routes import router as api_router
from .store import SqlRideStore

# configure file logging for the app
configure_logging()
logger = logging.getLogger("ridedispatch.main")


async def build_coordinator(config=settings) -> tuple[DispatchCoordinator, object]:
    """Wire the engine from settings. Returns the coordinator and the redis client (or None)."""
    from . import db

    await db.init_db()
    store = SqlRideStore(db.engine)
    redis = None
    if config.USE_REDIS:
        redis = create_redis(config.REDIS_URL)
        availability = RedisAvailabilityStore(redis, config.STALENESS_SEC, config.AVAILABILITY_TTL_SEC)
        publisher = RedisEventPublisher(redis, config.EVENTS_CHANNEL)
    else:
        availability = MemoryAvailabilityStore(config.STALENESS_SEC)
        publisher = MemoryEventPublisher()
    if config.DISTANCE_SERVICE_URL:
        distance = HttpDistanceProvider(config.DISTANCE_SERVICE_URL, config.DISTANCE_TIMEOUT_SEC)
    else:
        distance = StraightLineDistance()
    offers = OfferManager(store, KeyedLocks(), publisher, config.OFFER_TIMEOUT_SEC)
    coordinator = DispatchCoordinator(store, availability, offers, publisher, distance, config)
    return coordinator, redis


async def periodic_availability_prune(coordinator: DispatchCoordinator):
    """Drop expired drivers from the availability index every 60 seconds."""
    while True:
        await asyncio.sleep(60)
        try:
            await coordinator.availability.prune()
        except Exception:
            logger.exception("availability_prune_failed")


def create_app(coordinator: DispatchCoordinator | None = None) -> FastAPI:
    """Build the API. Tests pass a ready coordinator; otherwise one is wired from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ride dispatch engine")
        redis = None
        if coordinator is None:
            app.state.coordinator, redis = await build_coordinator()
        else:
            app.state.coordinator = coordinator
        app.state.redis = redis
        await app.state.coordinator.recover()
        prune_task = asyncio.create_task(periodic_availability_prune(app.state.coordinator))
        yield
        prune_task.cancel()
        await app.state.coordinator.shutdown()
        if redis is not None:
            await redis.aclose()
        logger.info("Stopped ride dispatch engine")

    app = FastAPI(title="Ride Dispatch Engine", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id(request: Request, call_next):
        cid = request.headers.get("X-Correlation-ID", uuid.uuid4().hex)
        start = time.time()
        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000
        response.headers["X-Correlation-ID"] = cid
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level, "request: cid=%s method=%s path=%s status=%s duration_ms=%.2f",
            cid, request.method, request.url.path, response.status_code, duration_ms,
        )
        return response

    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(api_router, prefix="/v1")

    @app.get("/health")
    async def health_check():
        redis = getattr(app.state, "redis", None)
        return {"status": "ok", "redis": await ping(redis) if redis is not None else None}

    @app.get("/")
    async def read_root():
        return {"message": "Ride Dispatch Engine"}

    return app


app = create_app()
