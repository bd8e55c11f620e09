"""Structured discovery through Google Places text search."""

import logging
from typing import Iterable, List, Optional, Sequence

import requests

from poi_discovery.core.cache import TTLCache
from poi_discovery.core.errors import SourceUnavailable
from poi_discovery.core.models import CandidateRecord, Scope, SourceKind
from poi_discovery.etl.transform import place_to_candidate
from poi_discovery.sources.base import SourceAdapter
from poi_discovery.vendors.google_places import GoogleMapsPlatform, GooglePlacesError

logger = logging.getLogger(__name__)


class GooglePlacesSource(SourceAdapter):
    name = "google_places"
    kind = SourceKind.STRUCTURED
    priority = 10

    def __init__(self, platform: GoogleMapsPlatform, queries: Sequence[str], *, cache: Optional[TTLCache] = None) -> None:
        super().__init__(cache=cache)
        self.platform = platform
        self._queries = tuple(queries)

    def queries(self, scope: Scope) -> Iterable[str]:
        return self._queries

    def fetch(self, query: str, scope: Scope) -> List[CandidateRecord]:
        try:
            results = self.platform.search(query, scope)
        except (GooglePlacesError, requests.RequestException) as exc:
            raise SourceUnavailable(self.name, str(exc)) from exc
        return [place_to_candidate(result, self.name) for result in results if result.get("name")]
