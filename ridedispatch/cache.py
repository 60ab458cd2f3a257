from redis.asyncio import Redis
from .config import settings

DRIVERS_GEO_KEY = "dispatch:drivers:geo"


def driver_key(driver_id: str) -> str:
    return f"dispatch:drivers:{driver_id}"


def create_redis(url: str | None = None) -> Redis:
    return Redis.from_url(url or settings.REDIS_URL, decode_responses=True)


async def ping(client: Redis) -> bool:
    try:
        return await client.ping()
    except Exception:
        return False
