"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    google_api_key: str
    database_url: str
    worker_port: int = 9000
    places_language: str = "pt-BR"
    places_region: str = "br"
    cache_ttl_hours: int = 24
    max_provider_results: int = 60
    page_token_delay_seconds: float = 2.0
    export_dir: str = "./exports"
    export_ttl_hours: int = 24


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer; using %d", name, raw, default)
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")

    if not database_url:
        logger.warning("DATABASE_URL is not set; database operations will fail.")
    if not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; Google Places requests will fail.")

    return Settings(
        google_api_key=google_api_key,
        database_url=database_url,
        worker_port=_int_env("WORKER_PORT", 9000),
        places_language=os.getenv("PLACES_LANGUAGE", "pt-BR"),
        places_region=os.getenv("PLACES_REGION", "br"),
        cache_ttl_hours=_int_env("CACHE_TTL_HOURS", 24),
        max_provider_results=_int_env("MAX_PROVIDER_RESULTS", 60),
        page_token_delay_seconds=_float_env("PAGE_TOKEN_DELAY_SECONDS", 2.0),
        export_dir=os.getenv("EXPORT_DIR", "./exports"),
        export_ttl_hours=_int_env("EXPORT_TTL_HOURS", 24),
    )
