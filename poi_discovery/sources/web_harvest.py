"""Text harvesting from configured web pages (blogs, listicles, forums)."""

import logging
from typing import Iterable, List, Optional, Sequence

import requests

from poi_discovery.core.cache import TTLCache
from poi_discovery.core.errors import SourceUnavailable
from poi_discovery.core.models import CandidateRecord, Scope, SourceKind
from poi_discovery.core.rate_limiter import RateLimiter
from poi_discovery.sources.base import SourceAdapter
from poi_discovery.vendors.web_pages import REQUEST_TIMEOUT, RobotsPolicy, build_session, extract_text_blocks, fetch_url

logger = logging.getLogger(__name__)


class WebHarvestSource(SourceAdapter):
    """Emit one text candidate per keyword-bearing block of each configured page."""

    name = "web_harvest"
    kind = SourceKind.TEXT
    priority = 50

    def __init__(
        self,
        urls: Sequence[str],
        keywords: Sequence[str],
        *,
        cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        super().__init__(cache=cache)
        self.urls = tuple(urls)
        self.keywords = tuple(keywords)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.session = session or build_session()
        self.robots = RobotsPolicy(self.session, timeout=timeout)
        self.timeout = timeout

    def queries(self, scope: Scope) -> Iterable[str]:
        return self.urls

    def fetch(self, query: str, scope: Scope) -> List[CandidateRecord]:
        if not self.robots.allowed(query):
            return []
        self.rate_limiter.acquire("web_harvest")
        fetched = fetch_url(self.session, query, timeout=self.timeout)
        if fetched is None:
            raise SourceUnavailable(self.name, f"could not fetch {query}")
        final_url, soup = fetched
        blocks = extract_text_blocks(soup, self.keywords)
        logger.info("Harvested %d text blocks from %s", len(blocks), final_url)
        return [
            CandidateRecord(source=self.name, source_kind=SourceKind.TEXT, text=block, source_url=final_url)
            for block in blocks
        ]
