"""Client utilities for the Google Places and Geocoding APIs."""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from poi_discovery.core.cache import TTLCache, make_key
from poi_discovery.core.models import Coordinates, Scope
from poi_discovery.core.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)
_BASE_URL = "https://maps.googleapis.com/maps/api"
REQUEST_TIMEOUT = 10
PAGE_TOKEN_DELAY_SECONDS = 2.0
DETAIL_FIELDS = (
    "place_id,name,formatted_address,formatted_phone_number,geometry,website,rating,"
    "user_ratings_total,types,price_level,opening_hours,photos,address_components"
)
_OK_STATUSES = {"OK", "ZERO_RESULTS"}
_RATE_LIMIT_STATUSES = {"OVER_QUERY_LIMIT", "RESOURCE_EXHAUSTED"}


def _build_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET",),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.mount("http://", HTTPAdapter(max_retries=retries))
    return session


_SESSION = _build_session()


class GooglePlacesError(RuntimeError):
    """Raised when the Places API returns a non-successful response."""


class GooglePlacesRateLimited(GooglePlacesError):
    """Raised when Google reports the quota is exhausted; callers should back off and retry."""


def _get(endpoint: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    response = _SESSION.get(f"{_BASE_URL}/{endpoint}", params=params, timeout=timeout)
    if response.status_code == 429:
        raise GooglePlacesRateLimited(f"{endpoint}: HTTP 429")
    response.raise_for_status()
    payload = response.json()
    status = payload.get("status")
    if status in _RATE_LIMIT_STATUSES:
        logger.warning("%s rate limited: status=%s", endpoint, status)
        raise GooglePlacesRateLimited(payload.get("error_message") or status)
    if status not in _OK_STATUSES:
        logger.error("%s failed: status=%s, error_message=%s", endpoint, status, payload.get("error_message"))
        raise GooglePlacesError(payload.get("error_message") or status)
    return payload


def text_search(query: str, api_key: str, pagetoken: Optional[str] = None, timeout: float = REQUEST_TIMEOUT) -> Dict[str, Any]:
    params = {"query": query, "key": api_key}
    if pagetoken:
        params["pagetoken"] = pagetoken
    return _get("place/textsearch/json", params, timeout)


def place_details(place_id: str, api_key: str, timeout: float = REQUEST_TIMEOUT) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": DETAIL_FIELDS}
    payload = _get("place/details/json", params, timeout)
    return payload.get("result", {})


def find_place(text: str, api_key: str, timeout: float = REQUEST_TIMEOUT) -> Optional[str]:
    params = {"input": text, "inputtype": "textquery", "fields": "place_id", "key": api_key}
    payload = _get("place/findplacefromtext/json", params, timeout)
    candidates = payload.get("candidates") or []
    return candidates[0].get("place_id") if candidates else None


def geocode(address: str, api_key: str, timeout: float = REQUEST_TIMEOUT) -> Optional[Dict[str, float]]:
    params = {"address": address, "key": api_key}
    payload = _get("geocode/json", params, timeout)
    results = payload.get("results") or []
    if not results:
        return None
    return results[0].get("geometry", {}).get("location")


def photo_url(photo_reference: str, max_width: int = 400) -> str:
    """Keyless photo URL; the serving proxy appends the API key."""
    return f"{_BASE_URL}/place/photo?maxwidth={max_width}&photo_reference={photo_reference}"


class GoogleMapsPlatform:
    """Mapping collaborator used by discovery and enrichment: search, geocode and details."""

    def __init__(
        self,
        api_key: str,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[TTLCache] = None,
        timeout: float = REQUEST_TIMEOUT,
        max_pages: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cache = cache
        self.timeout = timeout
        self.max_pages = max(1, max_pages)
        self._sleep = sleep

    def _require_key(self) -> str:
        if not self.api_key:
            raise GooglePlacesError("GOOGLE_API_KEY is required")
        return self.api_key

    def _cached(self, namespace: str, compute: Callable[[], Any], **params: Any) -> Any:
        if self.cache is None:
            return compute()
        value, _ = self.cache.get_or_compute(make_key(namespace, **params), compute)
        return value

    def search(self, query: str, scope: Optional[Scope] = None) -> List[Dict[str, Any]]:
        """Run a text search for ``query`` within ``scope`` and return raw place results."""
        api_key = self._require_key()
        full_query = f"{query} in {scope.label}" if scope is not None and scope.label else query
        results: List[Dict[str, Any]] = []
        page_token = None
        processed_pages = 0

        while processed_pages < self.max_pages:
            self.rate_limiter.acquire("google_places")
            response = text_search(full_query, api_key, pagetoken=page_token, timeout=self.timeout)
            page = response.get("results", [])
            logger.info("Fetched %d results on page %d for query=%s", len(page), processed_pages + 1, full_query)
            results.extend(page)
            processed_pages += 1
            page_token = response.get("next_page_token")
            if not page_token:
                break
            self._sleep(PAGE_TOKEN_DELAY_SECONDS)

        return results

    def geocode(self, address: str) -> Optional[Coordinates]:
        api_key = self._require_key()

        def _compute() -> Optional[Dict[str, float]]:
            self.rate_limiter.acquire("google_geocode")
            return geocode(address, api_key, timeout=self.timeout)

        location = self._cached("google_geocode", _compute, address=address)
        return Coordinates.parse(location)

    def find_place(self, text: str) -> Optional[str]:
        api_key = self._require_key()

        def _compute() -> Optional[str]:
            self.rate_limiter.acquire("google_places")
            return find_place(text, api_key, timeout=self.timeout)

        return self._cached("google_find_place", _compute, text=text)

    def place_details(self, place_id: str) -> Dict[str, Any]:
        api_key = self._require_key()

        def _compute() -> Dict[str, Any]:
            self.rate_limiter.acquire("google_places")
            return place_details(place_id, api_key, timeout=self.timeout)

        return self._cached("google_place_details", _compute, place_id=place_id)
