"""Service configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Routing / geocoding (OpenRouteService)
    ORS_API_KEY: str = ""
    ORS_BASE_URL: str = "https://api.openrouteservice.org"
    GEOCODE_COUNTRY: str = "KE"
    ROUTING_TIMEOUT_SEC: float = 5.0
    FALLBACK_SPEED_KMH: float = 40.0

    # Route cost cache
    REDIS_URL: str = ""
    ROUTE_CACHE_TTL_SEC: int = 2 * 3600
    ROUTE_CACHE_SIZE: int = 2048

    # Durable order journal
    DATABASE_URL: str = ""

    # Notification layer
    NOTIFY_WEBHOOK_URL: str = ""

    # Matching
    MATCHING_FALLBACK: str = "strict"  # strict | lenient
    AUTO_DISPATCH: bool = True

    # Pricing (KES)
    BASE_FARE: float = 100.0
    RATE_PER_KM: float = 50.0

    # Live tracking
    WATCH_QUEUE_SIZE: int = 32

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "allow"


settings = Settings()
