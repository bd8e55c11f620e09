"""Utilities for transforming Google Places responses into candidate records."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from poi_discovery.core.models import CandidateRecord, Coordinates, SourceKind
from poi_discovery.vendors.google_places import photo_url

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise", "food"}
PRICE_RANGES = {0: "$", 1: "$", 2: "$$", 3: "$$$", 4: "$$$$"}
MAX_PHOTOS = 5


def parse_city_country(address_components: Iterable[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    city = None
    country = None
    for component in address_components or []:
        types = set(component.get("types", []))
        if "locality" in types or "administrative_area_level_2" in types:
            city = component.get("long_name")
        if "country" in types:
            country = component.get("long_name")
    return city, country


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def price_level_to_range(price_level: Any) -> Optional[str]:
    """Map a 0-4 Places price level onto the ``$``..``$$$$`` scale, clamping out-of-range values."""
    try:
        level = int(price_level)
    except (TypeError, ValueError):
        return None
    return PRICE_RANGES[min(max(level, 0), 4)]


def photo_urls(result: Dict[str, Any], limit: int = MAX_PHOTOS) -> List[str]:
    urls = []
    for photo in (result.get("photos") or [])[:limit]:
        reference = photo.get("photo_reference")
        if reference:
            urls.append(photo_url(reference))
    return urls


def opening_hours(result: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Convert Places ``opening_hours.periods`` into ``{day: {open, close}}`` with HH:MM strings."""
    days = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
    hours: Dict[str, Dict[str, Any]] = {}
    for period in (result.get("opening_hours") or {}).get("periods") or []:
        start = period.get("open") or {}
        end = period.get("close") or {}
        day = start.get("day")
        if not isinstance(day, int) or not 0 <= day <= 6:
            continue
        hours[days[day]] = {
            "open": _hhmm(start.get("time")),
            "close": _hhmm(end.get("time")),
        }
    return hours


def _hhmm(value: Optional[str]) -> Optional[str]:
    if not value or len(value) != 4 or not value.isdigit():
        return None
    return f"{value[:2]}:{value[2:]}"


def place_to_candidate(result: Dict[str, Any], source: str) -> CandidateRecord:
    """Map one Places text-search or details result onto a structured candidate."""
    city, country = parse_city_country(result.get("address_components", []))
    address = result.get("formatted_address")
    if not address and result.get("vicinity"):
        address = ", ".join(part for part in (result["vicinity"], city, country) if part)

    types = list(result.get("types") or [])
    primary = _extract_primary_type(types)
    categories = [primary] + [t for t in types if t != primary and t not in _IGNORE_TYPES] if primary else []

    return CandidateRecord(
        source=source,
        source_kind=SourceKind.STRUCTURED,
        name=result.get("name"),
        address=address,
        coordinates=Coordinates.parse(result.get("geometry", {}).get("location")),
        categories=categories,
        rating=result.get("rating"),
        price_level=result.get("price_level"),
        price_range=price_level_to_range(result.get("price_level")),
        phone=result.get("international_phone_number") or result.get("formatted_phone_number"),
        website=result.get("website"),
        hours=opening_hours(result),
        images=photo_urls(result),
        external_id=result.get("place_id"),
        raw=result,
    )
