"""SerpAPI Google Maps helpers used as a second structured discovery source."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

from serpapi import GoogleSearch

from poi_discovery.core.models import CandidateRecord, Coordinates, SourceKind

logger = logging.getLogger(__name__)

SOURCE_NAME = "serpapi_google_maps"
RETRY_LIMIT = 2
RETRY_DELAY_SECONDS = 1.2
_NESTED_RESULT_KEYS = ("places", "results", "local_results")
_TAKEAWAY_OPTIONS = {"takeout", "takeaway", "pickup"}


class SerpApiError(RuntimeError):
    """Raised when SerpAPI keeps failing or reports an error payload."""


def build_serpapi_params(query: str, api_key: str, ll: Optional[str] = None) -> Dict[str, Any]:
    """Request parameters for a Google Maps engine search."""
    cleaned = (query or "").strip()
    if not cleaned:
        raise ValueError("a non-empty query is required for SerpAPI maps searches")
    if not api_key:
        raise SerpApiError("SERPAPI_API_KEY is required")

    params: Dict[str, Any] = {"engine": "google_maps", "type": "search", "q": cleaned, "api_key": api_key}
    if ll:
        params["ll"] = ll
    return params


def fetch_from_serpapi(
    query: str,
    api_key: str,
    ll: Optional[str] = None,
    *,
    timeout: float = 30,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """Run one maps search, retrying ``RETRY_LIMIT`` times with jittered pauses.

    Responses are cached per (query, scope) by the caller, so a repeated
    lookup inside the TTL window never reaches this function.
    """
    params = dict(build_serpapi_params(query, api_key, ll), timeout=timeout)
    attempts = RETRY_LIMIT + 1
    last_error: Optional[Exception] = None

    for attempt in range(1, attempts + 1):
        logger.info("SerpAPI maps search %d/%d: q=%s ll=%s", attempt, attempts, params["q"], ll)
        try:
            payload = GoogleSearch(params).get_dict()
            if not payload:
                raise SerpApiError("empty payload")
            if "error" in payload:
                raise SerpApiError(f"error response: {payload.get('error') or payload}")
            return payload
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            logger.warning("SerpAPI maps search failed on attempt %d: %s", attempt, exc)
            if attempt < attempts:
                sleep(RETRY_DELAY_SECONDS + random.uniform(0, 0.8))

    logger.error("Giving up on SerpAPI maps search for q=%s", params["q"])
    raise SerpApiError(str(last_error)) from last_error


def _result_items(data: Dict[str, Any]) -> List[Any]:
    """``local_results`` arrives as a list, or as a dict wrapping one; ``place_results`` is the single-hit form."""
    local = data.get("local_results")
    if isinstance(local, list):
        return local
    if isinstance(local, dict):
        for key in _NESTED_RESULT_KEYS:
            nested = local.get(key)
            if isinstance(nested, list):
                return nested

    place = data.get("place_results")
    if isinstance(place, dict):
        return [place]
    if isinstance(place, list):
        return place

    logger.warning("SerpAPI payload has no usable results; top-level keys=%s", sorted(data)[:10])
    return []


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _service_options(value: Any) -> Dict[str, bool]:
    if not isinstance(value, dict):
        return {}
    options: Dict[str, bool] = {}
    for key, flag in value.items():
        option = str(key).lower().replace("-", "_")
        options["takeaway" if option in _TAKEAWAY_OPTIONS else option] = bool(flag)
    return options


def _to_candidate(item: Dict[str, Any], source: str) -> Optional[CandidateRecord]:
    name = _text(item.get("title") or item.get("name"))
    if not name:
        return None

    categories = [str(kind) for kind in item.get("types") or [] if kind]
    if not categories and item.get("type"):
        categories = [str(item["type"])]

    return CandidateRecord(
        source=source,
        source_kind=SourceKind.STRUCTURED,
        name=name,
        address=_text(item.get("address")),
        coordinates=Coordinates.parse(item.get("gps_coordinates")),
        categories=categories,
        rating=_number(item.get("rating")),
        price_range=_text(item.get("price")),
        phone=_text(item.get("phone")),
        website=_text(item.get("website")),
        service_options=_service_options(item.get("service_options")),
        images=[item["thumbnail"]] if item.get("thumbnail") else [],
        description=_text(item.get("description")),
        external_id=_text(item.get("place_id")),
        raw=item,
    )


def parse_serpapi_maps(data: Optional[Dict[str, Any]], source: str = SOURCE_NAME) -> List[CandidateRecord]:
    """Map a maps-engine payload onto structured candidates, skipping nameless entries."""
    if not data:
        return []
    candidates = []
    for item in _result_items(data):
        if isinstance(item, dict):
            candidate = _to_candidate(item, source)
            if candidate is not None:
                candidates.append(candidate)
    return candidates
