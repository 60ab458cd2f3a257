from pydantic_settings import BaseSettings
from pathlib import Path
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/ridedispatch"
    DB_ECHO: bool = False

    REDIS_URL: str = "redis://localhost:6379/0"
    EVENTS_CHANNEL: str = "ridedispatch:events"
    # redis drops availability hashes after this; staleness is still checked on read
    AVAILABILITY_TTL_SEC: int = 300
    USE_REDIS: bool = True

    # matching
    STALENESS_SEC: float = 60.0
    MATCH_RADIUS_KM: float = 10.0
    MAX_CANDIDATES: int = 10
    WEIGHT_DISTANCE: float = 0.6
    WEIGHT_IDLE: float = 0.2
    WEIGHT_RELIABILITY: float = 0.2
    IDLE_CAP_SEC: float = 1800.0

    # offers
    OFFER_TIMEOUT_SEC: float = 20.0

    # dispatch retries
    MAX_DISPATCH_ATTEMPTS: int = 3
    RETRY_BACKOFF_SEC: float = 10.0
    MAX_DRIVER_CANCELLATIONS: int = 2

    # pricing (minor currency units)
    BASE_FARE_CENTS: int = 5000
    PER_KM_CENTS: int = 2500
    MINIMUM_FARE_CENTS: int = 8000
    CURRENCY: str = "NPR"
    MAX_SURGE: float = 3.0

    # distance/eta collaborator; empty url means straight-line only
    DISTANCE_SERVICE_URL: str = ""
    DISTANCE_TIMEOUT_SEC: float = 2.0
    AVERAGE_SPEED_KMH: float = 25.0
    ROAD_FACTOR: float = 1.3

    # Load .env located next to this file (ridedispatch/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}


# yaml section -> {yaml key: settings field}
_YAML_MAPPING = {
    "database": {"url": "DATABASE_URL", "echo": "DB_ECHO"},
    "redis": {
        "url": "REDIS_URL",
        "enabled": "USE_REDIS",
        "events_channel": "EVENTS_CHANNEL",
        "availability_ttl_sec": "AVAILABILITY_TTL_SEC",
    },
    "matching": {
        "staleness_sec": "STALENESS_SEC",
        "radius_km": "MATCH_RADIUS_KM",
        "max_candidates": "MAX_CANDIDATES",
        "weight_distance": "WEIGHT_DISTANCE",
        "weight_idle": "WEIGHT_IDLE",
        "weight_reliability": "WEIGHT_RELIABILITY",
        "idle_cap_sec": "IDLE_CAP_SEC",
    },
    "offers": {"timeout_sec": "OFFER_TIMEOUT_SEC"},
    "dispatch": {
        "max_attempts": "MAX_DISPATCH_ATTEMPTS",
        "retry_backoff_sec": "RETRY_BACKOFF_SEC",
        "max_driver_cancellations": "MAX_DRIVER_CANCELLATIONS",
    },
    "pricing": {
        "base_fare_cents": "BASE_FARE_CENTS",
        "per_km_cents": "PER_KM_CENTS",
        "minimum_fare_cents": "MINIMUM_FARE_CENTS",
        "currency": "CURRENCY",
        "max_surge": "MAX_SURGE",
    },
    "distance": {
        "service_url": "DISTANCE_SERVICE_URL",
        "timeout_sec": "DISTANCE_TIMEOUT_SEC",
        "average_speed_kmh": "AVERAGE_SPEED_KMH",
        "road_factor": "ROAD_FACTOR",
    },
}


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings from application.yaml and merge with environment variables."""
    if config_path is None:
        config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
        if yaml_config:
            for section, keys in _YAML_MAPPING.items():
                values = yaml_config.get(section) or {}
                for yaml_key, field in keys.items():
                    config_dict[field] = values.get(yaml_key)

    # Create Settings with YAML values, but allow env vars to override
    values = {k: v for k, v in config_dict.items() if v is not None}
    from_env = Settings()
    for field in list(values):
        if field in from_env.model_fields_set:
            values.pop(field)
    return Settings(**values)


settings = load_settings()
