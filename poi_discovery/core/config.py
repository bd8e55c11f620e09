"""Application configuration helpers."""

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_DEFAULT_QUERIES = ("amala restaurant", "amala spot", "bukka")
_DEFAULT_KEYWORDS = ("amala", "ewedu", "gbegiri", "bukka", "buka")


class ConfigError(RuntimeError):
    """Raised when a configuration value cannot be parsed."""


@dataclass(frozen=True)
class Settings:
    google_api_key: str = ""
    serpapi_api_key: str = ""
    database_url: str = ""
    openai_api_key: str = ""
    openai_api_base: Optional[str] = None
    extraction_model: str = "gpt-4o-mini"
    worker_port: int = 9000
    discovery_enabled: bool = True
    discovery_queries: Tuple[str, ...] = _DEFAULT_QUERIES
    harvest_urls: Tuple[str, ...] = ()
    harvest_keywords: Tuple[str, ...] = _DEFAULT_KEYWORDS
    max_pages: int = 1
    cache_ttl_seconds: float = 300.0
    cache_sweep_seconds: float = 600.0
    request_timeout_seconds: float = 10.0
    adapter_timeout_seconds: float = 60.0
    extraction_timeout_seconds: float = 20.0
    max_clarify_rounds: int = 3
    dedup_radius_meters: float = 150.0
    enrich_workers: int = 3
    enrich_base_delay_seconds: float = 30.0
    enrich_max_delay_seconds: float = 900.0
    enrich_max_attempts: int = 5
    enrich_queue_max_size: int = 0
    enrich_freshness_days: int = 7
    default_phone_region: Optional[str] = None


def _split_csv(raw: Optional[str], default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    google_api_key = os.getenv("GOOGLE_API_KEY", "")
    serpapi_api_key = os.getenv("SERPAPI_API_KEY", "")
    database_url = os.getenv("DATABASE_URL", "")
    openai_api_key = os.getenv("OPENAI_API_KEY", "")
    default_phone_region_raw = os.getenv("DEFAULT_PHONE_REGION")
    default_phone_region = default_phone_region_raw.strip().upper() if default_phone_region_raw else None

    if not database_url:
        logger.warning("DATABASE_URL is not set; locations will be kept in memory only.")
    if not google_api_key:
        logger.warning("GOOGLE_API_KEY is not configured; Google Places discovery and enrichment will fail.")
    if not openai_api_key:
        logger.warning("OPENAI_API_KEY is not configured; falling back to heuristic text extraction.")

    return Settings(
        google_api_key=google_api_key,
        serpapi_api_key=serpapi_api_key,
        database_url=database_url,
        openai_api_key=openai_api_key,
        openai_api_base=os.getenv("OPENAI_API_BASE") or None,
        extraction_model=os.getenv("EXTRACTION_MODEL", "gpt-4o-mini"),
        worker_port=_get_int("WORKER_PORT", 9000),
        discovery_enabled=_get_bool("DISCOVERY_ENABLED", True),
        discovery_queries=_split_csv(os.getenv("DISCOVERY_QUERIES"), _DEFAULT_QUERIES),
        harvest_urls=_split_csv(os.getenv("HARVEST_URLS")),
        harvest_keywords=_split_csv(os.getenv("HARVEST_KEYWORDS"), _DEFAULT_KEYWORDS),
        max_pages=_get_int("WORKER_MAX_PAGES", 1),
        cache_ttl_seconds=_get_float("CACHE_TTL_SECONDS", 300.0),
        cache_sweep_seconds=_get_float("CACHE_SWEEP_SECONDS", 600.0),
        request_timeout_seconds=_get_float("REQUEST_TIMEOUT_SECONDS", 10.0),
        adapter_timeout_seconds=_get_float("ADAPTER_TIMEOUT_SECONDS", 60.0),
        extraction_timeout_seconds=_get_float("EXTRACTION_TIMEOUT_SECONDS", 20.0),
        max_clarify_rounds=_get_int("MAX_CLARIFY_ROUNDS", 3),
        dedup_radius_meters=_get_float("DEDUP_RADIUS_METERS", 150.0),
        enrich_workers=_get_int("ENRICH_WORKERS", 3),
        enrich_base_delay_seconds=_get_float("ENRICH_BASE_DELAY_SECONDS", 30.0),
        enrich_max_delay_seconds=_get_float("ENRICH_MAX_DELAY_SECONDS", 900.0),
        enrich_max_attempts=_get_int("ENRICH_MAX_ATTEMPTS", 5),
        enrich_queue_max_size=_get_int("ENRICH_QUEUE_MAX_SIZE", 0),
        enrich_freshness_days=_get_int("ENRICH_FRESHNESS_DAYS", 7),
        default_phone_region=default_phone_region,
    )
