"""Process-level wiring of the discovery and enrichment services."""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from poi_discovery.core.cache import TTLCache
from poi_discovery.core.config import Settings, get_settings
from poi_discovery.core.db import build_store
from poi_discovery.core.rate_limiter import RateLimiter
from poi_discovery.etl.dedup import DuplicateDetector
from poi_discovery.etl.normalize import ExtractionNormalizer
from poi_discovery.jobs.discovery import DiscoveryOrchestrator
from poi_discovery.jobs.enrichment import EnrichmentQueue, EnrichmentWorkerPool, RecordEnricher
from poi_discovery.sources.google_places import GooglePlacesSource
from poi_discovery.sources.serpapi_maps import SerpApiMapsSource
from poi_discovery.sources.web_harvest import WebHarvestSource
from poi_discovery.vendors.google_places import GoogleMapsPlatform
from poi_discovery.vendors.oracle import build_oracle

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    cache: TTLCache
    rate_limiter: RateLimiter
    store: Any
    maps: GoogleMapsPlatform
    normalizer: ExtractionNormalizer
    detector: DuplicateDetector
    queue: EnrichmentQueue
    enricher: RecordEnricher
    workers: EnrichmentWorkerPool
    orchestrator: DiscoveryOrchestrator

    def start(self) -> None:
        self.cache.start_sweeper(self.settings.cache_sweep_seconds)
        self.workers.start()

    def stop(self) -> None:
        self.workers.stop()
        self.cache.stop_sweeper()


def build_sources(settings: Settings, maps: GoogleMapsPlatform, cache: TTLCache, rate_limiter: RateLimiter) -> List[Any]:
    """Adapters enabled by the configured credentials and harvest URLs."""
    sources: List[Any] = []
    if settings.google_api_key:
        sources.append(GooglePlacesSource(maps, settings.discovery_queries, cache=cache))
    if settings.serpapi_api_key:
        sources.append(
            SerpApiMapsSource(
                settings.serpapi_api_key,
                settings.discovery_queries,
                cache=cache,
                rate_limiter=rate_limiter,
                timeout=settings.request_timeout_seconds,
            )
        )
    if settings.harvest_urls:
        sources.append(
            WebHarvestSource(
                settings.harvest_urls,
                settings.harvest_keywords,
                cache=cache,
                rate_limiter=rate_limiter,
                timeout=settings.request_timeout_seconds,
            )
        )
    if not sources:
        logger.warning("No discovery sources configured; set GOOGLE_API_KEY, SERPAPI_API_KEY or HARVEST_URLS")
    return sources


def build_services(settings: Optional[Settings] = None, *, store: Any = None, oracle: Any = None) -> Services:
    """Construct one queue, cache and store per process and hand them to every consumer."""
    settings = settings or get_settings()
    cache = TTLCache(default_ttl=settings.cache_ttl_seconds)
    rate_limiter = RateLimiter()
    store = store if store is not None else build_store(settings)
    maps = GoogleMapsPlatform(
        settings.google_api_key,
        rate_limiter=rate_limiter,
        cache=cache,
        timeout=settings.request_timeout_seconds,
        max_pages=settings.max_pages,
    )
    normalizer = ExtractionNormalizer(
        oracle if oracle is not None else build_oracle(settings),
        max_clarify_rounds=settings.max_clarify_rounds,
        default_phone_region=settings.default_phone_region,
    )
    detector = DuplicateDetector(radius_m=settings.dedup_radius_meters, cache=cache)
    queue = EnrichmentQueue(
        base_delay=settings.enrich_base_delay_seconds,
        max_delay=settings.enrich_max_delay_seconds,
        max_attempts=settings.enrich_max_attempts,
        max_size=settings.enrich_queue_max_size,
    )
    enricher = RecordEnricher(
        store,
        maps,
        freshness_days=settings.enrich_freshness_days,
        default_phone_region=settings.default_phone_region,
    )
    workers = EnrichmentWorkerPool(queue, enricher, workers=settings.enrich_workers)
    orchestrator = DiscoveryOrchestrator(
        store,
        build_sources(settings, maps, cache, rate_limiter),
        normalizer,
        detector,
        queue,
        adapter_timeout=settings.adapter_timeout_seconds,
    )
    return Services(
        settings=settings,
        cache=cache,
        rate_limiter=rate_limiter,
        store=store,
        maps=maps,
        normalizer=normalizer,
        detector=detector,
        queue=queue,
        enricher=enricher,
        workers=workers,
        orchestrator=orchestrator,
    )
