import os
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load variables from .env
load_dotenv()


class Settings(BaseModel):
    # Backend API
    api_base_url: str = "http://localhost:3000/api"
    api_timeout_seconds: float = 10.0

    # Cache staleness / garbage collection
    cache_stale_seconds: float = 300.0
    cache_gc_seconds: float = 600.0
    cache_gc_interval_seconds: int = 60
    enable_cache_gc: bool = True

    # Query retries (mutations are never retried)
    query_retry_attempts: int = 3
    query_retry_base_delay_seconds: float = 1.0
    query_retry_max_delay_seconds: float = 30.0

    # Search
    search_debounce_seconds: float = 0.5

    # Booking rules
    booking_window_days: int = 180
    min_nights: int = 1
    max_nights: Optional[int] = None
    max_guests: int = 50

    # Pricing
    service_fee_rate: Decimal = Decimal("0.10")
    tax_rate: Decimal = Decimal("0")

    # Logging settings
    log_format: str = "console"  # Options: "console", "json"
    log_level: str = "INFO"


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip() == "":
        return None
    return int(value)


settings = Settings(
    api_base_url=os.environ.get("API_BASE_URL", "http://localhost:3000/api"),
    api_timeout_seconds=float(os.environ.get("API_TIMEOUT_SECONDS", "10")),
    cache_stale_seconds=float(os.environ.get("CACHE_STALE_SECONDS", "300")),
    cache_gc_seconds=float(os.environ.get("CACHE_GC_SECONDS", "600")),
    cache_gc_interval_seconds=int(os.environ.get("CACHE_GC_INTERVAL_SECONDS", "60")),
    enable_cache_gc=os.environ.get("ENABLE_CACHE_GC", "true").lower() == "true",
    query_retry_attempts=int(os.environ.get("QUERY_RETRY_ATTEMPTS", "3")),
    query_retry_base_delay_seconds=float(
        os.environ.get("QUERY_RETRY_BASE_DELAY_SECONDS", "1")
    ),
    query_retry_max_delay_seconds=float(
        os.environ.get("QUERY_RETRY_MAX_DELAY_SECONDS", "30")
    ),
    search_debounce_seconds=float(os.environ.get("SEARCH_DEBOUNCE_SECONDS", "0.5")),
    booking_window_days=int(os.environ.get("BOOKING_WINDOW_DAYS", "180")),
    min_nights=int(os.environ.get("MIN_NIGHTS", "1")),
    max_nights=_optional_int(os.environ.get("MAX_NIGHTS")),
    max_guests=int(os.environ.get("MAX_GUESTS", "50")),
    service_fee_rate=Decimal(os.environ.get("SERVICE_FEE_RATE", "0.10")),
    tax_rate=Decimal(os.environ.get("TAX_RATE", "0")),
    log_format=os.environ.get("LOG_FORMAT", "console"),
    log_level=os.environ.get("LOG_LEVEL", "INFO"),
)
