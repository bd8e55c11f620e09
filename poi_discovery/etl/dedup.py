"""Duplicate detection between a candidate and already known locations."""

from __future__ import annotations

import hashlib
import logging
import re
from math import asin, cos, radians, sin, sqrt
from typing import Any, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from rapidfuzz import fuzz

from poi_discovery.core.cache import TTLCache, make_key
from poi_discovery.core.models import Coordinates, DuplicateVerdict, fingerprint

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_METERS = 150.0
NAME_DUPLICATE_THRESHOLD = 0.85
ADDRESS_DUPLICATE_THRESHOLD = 0.8
NAME_SUPPORT_THRESHOLD = 0.6
NAME_WEIGHT = 0.6
ADDRESS_WEIGHT = 0.4
EARTH_RADIUS_METERS = 6371000

ABBREVIATIONS = {
    "st": "street",
    "str": "street",
    "ave": "avenue",
    "av": "avenue",
    "rd": "road",
    "blvd": "boulevard",
    "dr": "drive",
    "ln": "lane",
    "cres": "crescent",
    "cl": "close",
    "pl": "place",
    "ct": "court",
    "sq": "square",
    "hwy": "highway",
    "expy": "expressway",
    "n": "north",
    "s": "south",
    "e": "east",
    "w": "west",
}

_APOSTROPHES = re.compile(r"['’`]")
_NON_WORD = re.compile(r"[^\w\s]")


def haversine(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance in meters."""
    dlat = radians(b.lat - a.lat)
    dlng = radians(b.lng - a.lng)
    h = sin(dlat / 2) ** 2 + cos(radians(a.lat)) * cos(radians(b.lat)) * sin(dlng / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * asin(sqrt(h))


def _tokens(value: Optional[str]) -> list:
    if not value:
        return []
    text = _APOSTROPHES.sub("", value.lower())
    return _NON_WORD.sub(" ", text).split()


def _jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def name_similarity(a: Optional[str], b: Optional[str]) -> float:
    tokens_a, tokens_b = _tokens(a), _tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    edit = fuzz.ratio(" ".join(tokens_a), " ".join(tokens_b)) / 100.0
    return max(_jaccard(tokens_a, tokens_b), edit)


def address_tokens(value: Optional[str]) -> list:
    return [ABBREVIATIONS.get(token, token) for token in _tokens(value)]


def street_key(value: Optional[str]) -> Tuple[Optional[str], Tuple[str, ...]]:
    """Street number and street-name tokens from the first comma segment carrying a number."""
    for segment in (value or "").split(","):
        tokens = address_tokens(segment)
        numbers = [token for token in tokens if any(ch.isdigit() for ch in token)]
        if numbers:
            number = numbers[0]
            return number, tuple(token for token in tokens if token != number)
    return None, tuple(address_tokens(value))


def address_similarity(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.0
    number_a, street_a = street_key(a)
    number_b, street_b = street_key(b)
    if number_a and number_b:
        if number_a != number_b:
            return 0.0
        if not street_a and not street_b:
            return 1.0
        return _jaccard(street_a, street_b)
    return _jaccard(address_tokens(a), address_tokens(b))


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    if set(address_tokens(a)) == set(address_tokens(b)):
        return True
    key_a, key_b = street_key(a), street_key(b)
    return key_a[0] is not None and key_a == key_b


def _record_fingerprint(record: Any) -> str:
    if hasattr(record, "fingerprint"):
        return record.fingerprint()
    return fingerprint(getattr(record, "name", None), getattr(record, "address", None), getattr(record, "coordinates", None))


def _record_line(record: Any) -> bytes:
    coordinates = getattr(record, "coordinates", None)
    return (
        "|".join(
            (
                str(getattr(record, "id", "")),
                getattr(record, "name", None) or "",
                getattr(record, "address", None) or "",
                f"{coordinates.lat:.6f},{coordinates.lng:.6f}" if coordinates else "",
            )
        )
        + "\n"
    ).encode("utf-8")


class KnownRecords:
    """Append-only record set whose signature is extended on every append.

    Verdicts against a ``KnownRecords`` are cached under its current signature,
    so a repeated check costs one lookup however many records it holds.
    """

    def __init__(self, records: Iterable[Any] = ()) -> None:
        self._records: List[Any] = []
        self._digest = hashlib.sha1()
        self.signature = self._digest.hexdigest()
        for record in records:
            self.append(record)

    def append(self, record: Any) -> None:
        self._records.append(record)
        self._digest.update(_record_line(record))
        self.signature = self._digest.hexdigest()

    def __iter__(self) -> Iterator[Any]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)


class DuplicateDetector:
    """Compare a candidate against known records: proximity first, then name, then address."""

    def __init__(self, *, radius_m: float = DEFAULT_RADIUS_METERS, cache: Optional[TTLCache] = None) -> None:
        self.radius_m = radius_m
        self.cache = cache

    def check(self, candidate: Any, existing_records: Union[KnownRecords, Sequence[Any]]) -> DuplicateVerdict:
        """Plain sequences are compared directly; only a ``KnownRecords`` set is cached."""
        if self.cache is None or not isinstance(existing_records, KnownRecords):
            return self._check(candidate, existing_records)
        key = make_key("dedup", candidate=_record_fingerprint(candidate), existing=existing_records.signature)
        verdict, _ = self.cache.get_or_compute(key, lambda: self._check(candidate, existing_records))
        return verdict

    def _nearby(self, candidate: Any, record: Any) -> Tuple[bool, bool]:
        """Return (comparable, within_radius)."""
        coords_a = getattr(candidate, "coordinates", None)
        coords_b = getattr(record, "coordinates", None)
        if coords_a is not None and coords_b is not None:
            within = haversine(coords_a, coords_b) <= self.radius_m
            return within, within
        return _same_address(getattr(candidate, "address", None), getattr(record, "address", None)), False

    def _check(self, candidate: Any, records: Sequence[Any]) -> DuplicateVerdict:
        best_observed = 0.0
        best_match = None
        best_score = -1.0
        best_fields: FrozenSet[str] = frozenset()

        for record in records:
            comparable, within_radius = self._nearby(candidate, record)
            if not comparable:
                continue

            name_sim = name_similarity(getattr(candidate, "name", None), getattr(record, "name", None))
            address_sim = address_similarity(getattr(candidate, "address", None), getattr(record, "address", None))
            combined = NAME_WEIGHT * name_sim + ADDRESS_WEIGHT * address_sim
            best_observed = max(best_observed, combined)

            is_duplicate = name_sim >= NAME_DUPLICATE_THRESHOLD or (
                address_sim >= ADDRESS_DUPLICATE_THRESHOLD and name_sim >= NAME_SUPPORT_THRESHOLD
            )
            if not is_duplicate or combined <= best_score:
                continue

            matched: Set[str] = set()
            if name_sim >= NAME_SUPPORT_THRESHOLD:
                matched.add("name")
            if address_sim >= ADDRESS_DUPLICATE_THRESHOLD:
                matched.add("address")
            if within_radius:
                matched.add("coordinates")

            best_match = record
            best_score = combined
            best_fields = frozenset(matched)

        if best_match is None:
            return DuplicateVerdict(is_duplicate=False, similarity=round(best_observed, 4))

        logger.debug(
            "Candidate %s duplicates %s (score=%.3f fields=%s)",
            getattr(candidate, "name", None),
            getattr(best_match, "id", None),
            best_score,
            sorted(best_fields),
        )
        return DuplicateVerdict(
            is_duplicate=True,
            matched_record_id=getattr(best_match, "id", None),
            similarity=round(best_score, 4),
            matched_fields=best_fields,
        )
