from pydantic_settings import BaseSettings
from pathlib import Path
import os
import yaml


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/ridehail"
    REDIS_URL: str = "redis://localhost:6379/0"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = -1
    DB_ECHO: bool = False

    # matching
    MATCH_RADIUS_KM: float = 10.0
    MAX_RADIUS_KM: float = 25.0
    RADIUS_GROWTH: float = 1.5
    OFFER_FANOUT: int = 20
    OFFER_TIMEOUT_SEC: float = 30.0
    MAX_OFFER_ROUNDS: int = 3
    DRIVER_LOCATION_TTL_SEC: int = 300

    # pricing
    DEFAULT_VEHICLE_CLASS: str = "Car"
    CANCELLATION_FEE_RATE: float = 0.10
    CANCELLATION_FEE_CAP: float = 50.0

    # route estimates: "haversine" or "google"
    ROUTE_PROVIDER: str = "haversine"
    GOOGLE_MAPS_API_KEY: str = ""
    GOOGLE_MAPS_BASE_URL: str = "https://maps.googleapis.com/maps/api"
    ROAD_FACTOR: float = 1.3
    AVERAGE_SPEED_KMH: float = 25.0

    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_SEC: int = 7 * 24 * 3600

    NOTIFY_WEBHOOK_URL: str = ""
    SIGNUP_TTL_SEC: int = 600
    OTP_MAX_ATTEMPTS: int = 5

    # Load .env located next to this file (ridehail/.env) so defaults are overridden
    model_config = {"env_file": str(Path(__file__).resolve().parent / ".env")}


# application.yaml section -> {yaml key: Settings field}
_YAML_MAP = {
    "database": {
        "url": "DATABASE_URL",
        "pool_size": "DB_POOL_SIZE",
        "max_overflow": "DB_MAX_OVERFLOW",
        "pool_timeout": "DB_POOL_TIMEOUT",
        "pool_recycle": "DB_POOL_RECYCLE",
        "echo": "DB_ECHO",
    },
    "redis": {"url": "REDIS_URL"},
    "matching": {
        "radius_km": "MATCH_RADIUS_KM",
        "max_radius_km": "MAX_RADIUS_KM",
        "radius_growth": "RADIUS_GROWTH",
        "fanout": "OFFER_FANOUT",
        "offer_timeout_sec": "OFFER_TIMEOUT_SEC",
        "max_rounds": "MAX_OFFER_ROUNDS",
        "location_ttl_sec": "DRIVER_LOCATION_TTL_SEC",
    },
    "pricing": {
        "default_vehicle_class": "DEFAULT_VEHICLE_CLASS",
        "cancellation_fee_rate": "CANCELLATION_FEE_RATE",
        "cancellation_fee_cap": "CANCELLATION_FEE_CAP",
    },
    "routing": {
        "provider": "ROUTE_PROVIDER",
        "google_api_key": "GOOGLE_MAPS_API_KEY",
        "road_factor": "ROAD_FACTOR",
        "average_speed_kmh": "AVERAGE_SPEED_KMH",
    },
    "auth": {
        "jwt_secret": "JWT_SECRET",
        "jwt_algorithm": "JWT_ALGORITHM",
        "jwt_expire_sec": "JWT_EXPIRE_SEC",
        "signup_ttl_sec": "SIGNUP_TTL_SEC",
        "otp_max_attempts": "OTP_MAX_ATTEMPTS",
    },
    "notifications": {"webhook_url": "NOTIFY_WEBHOOK_URL"},
}


def load_settings() -> Settings:
    """Load settings from application.yaml and merge with environment variables."""
    config_path = Path(__file__).resolve().parent / "application.yaml"

    config_dict = {}

    if config_path.exists():
        with open(config_path, "r") as f:
            yaml_config = yaml.safe_load(f)
            if yaml_config:
                for section, keys in _YAML_MAP.items():
                    values = yaml_config.get(section) or {}
                    for yaml_key, field in keys.items():
                        config_dict[field] = values.get(yaml_key)

    # init kwargs beat env vars in pydantic-settings, so drop YAML values the environment sets
    return Settings(**{k: v for k, v in config_dict.items() if v is not None and k not in os.environ})


settings = load_settings()
