"""Structured discovery through the SerpAPI Google Maps engine."""

import logging
from typing import Iterable, List, Optional, Sequence

from poi_discovery.core.cache import TTLCache
from poi_discovery.core.errors import SourceUnavailable
from poi_discovery.core.models import CandidateRecord, Scope, SourceKind
from poi_discovery.core.rate_limiter import RateLimiter
from poi_discovery.sources.base import SourceAdapter
from poi_discovery.vendors import serpapi_maps

logger = logging.getLogger(__name__)


class SerpApiMapsSource(SourceAdapter):
    name = serpapi_maps.SOURCE_NAME
    kind = SourceKind.STRUCTURED
    priority = 20

    def __init__(
        self,
        api_key: str,
        queries: Sequence[str],
        *,
        cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 30,
    ) -> None:
        super().__init__(cache=cache)
        self.api_key = api_key
        self._queries = tuple(queries)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.timeout = timeout

    def queries(self, scope: Scope) -> Iterable[str]:
        return self._queries

    def fetch(self, query: str, scope: Scope) -> List[CandidateRecord]:
        if not self.api_key:
            raise SourceUnavailable(self.name, "SERPAPI_API_KEY is not configured")
        full_query = f"{query} in {scope.label}" if scope.label else query
        self.rate_limiter.acquire("serpapi")
        try:
            data = serpapi_maps.fetch_from_serpapi(full_query, self.api_key, timeout=self.timeout)
        except serpapi_maps.SerpApiError as exc:
            raise SourceUnavailable(self.name, str(exc)) from exc
        return serpapi_maps.parse_serpapi_maps(data, source=self.name)
