"""Turn structured candidates and free-text submissions into canonical records."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from poi_discovery.core.errors import ExtractionFailure
from poi_discovery.core.models import (
    REQUIRED_FIELDS,
    CandidateRecord,
    CanonicalRecord,
    ConversationTurn,
    Coordinates,
    NormalizationResult,
    NormalizationStatus,
    OracleResult,
    SourceKind,
    SuggestedAction,
    collapse_whitespace,
    missing_required,
)
from poi_discovery.etl.transform import price_level_to_range
from poi_discovery.vendors.web_pages import normalize_phone, sanitize_website

logger = logging.getLogger(__name__)

GENERIC_CATEGORIES = {"point_of_interest", "establishment", "political", "premise", "food", "store"}
DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
SERVICE_TYPES = ("dine-in", "takeaway", "both")
MAX_CONFIDENCE_WITH_GAPS = 0.99

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_PRICE_RANGE = re.compile(r"^\${1,4}$")
_SERVICE_ALIASES = {
    "dinein": "dine-in",
    "eatin": "dine-in",
    "takeaway": "takeaway",
    "takeout": "takeaway",
    "delivery": "takeaway",
    "both": "both",
}
_DINE_IN_TAGS = {"restaurant", "cafe", "bar", "bakery", "night_club"}
_TAKEAWAY_TAGS = {"meal_takeaway", "meal_delivery"}

Conversation = Sequence[Union[ConversationTurn, Dict[str, Any]]]


def clamp_rating(value: Any) -> Optional[float]:
    try:
        rating = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(rating, 1.0), 5.0)


def normalize_price_range(price_range: Any = None, price_level: Any = None) -> Optional[str]:
    if isinstance(price_range, str) and _PRICE_RANGE.match(price_range.strip()):
        return price_range.strip()
    return price_level_to_range(price_level)


def normalize_categories(categories: Iterable[Any]) -> List[str]:
    seen: List[str] = []
    for category in categories or []:
        cleaned = collapse_whitespace(str(category)) if category is not None else None
        if not cleaned:
            continue
        lowered = cleaned.lower()
        if lowered not in seen:
            seen.append(lowered)
    return seen


def primary_category(categories: Iterable[str]) -> Optional[str]:
    for category in categories:
        if category not in GENERIC_CATEGORIES:
            return category
    return None


def normalize_service_type(value: Any) -> Optional[str]:
    if not value:
        return None
    key = re.sub(r"[\s_\-]", "", str(value)).lower()
    return _SERVICE_ALIASES.get(key)


def infer_service_type(service_options: Dict[str, Any], categories: Iterable[str]) -> Optional[str]:
    """Derive dine-in/takeaway/both from explicit service options, falling back to category tags."""
    options = {str(k).lower(): bool(v) for k, v in (service_options or {}).items()}
    if options:
        dine_in = options.get("dine_in", False)
        takeaway = any(options.get(key, False) for key in ("takeaway", "takeout", "delivery"))
        if dine_in and takeaway:
            return "both"
        if dine_in:
            return "dine-in"
        if takeaway:
            return "takeaway"

    tags = set(categories)
    dine_in = bool(tags & _DINE_IN_TAGS)
    takeaway = bool(tags & _TAKEAWAY_TAGS)
    if dine_in and takeaway:
        return "both"
    if dine_in:
        return "dine-in"
    if takeaway:
        return "takeaway"
    return None


def normalize_hours(hours: Any) -> Dict[str, Dict[str, str]]:
    """Keep only weekdays whose open and close times are valid HH:MM strings."""
    if not isinstance(hours, dict):
        return {}
    cleaned: Dict[str, Dict[str, str]] = {}
    for day, entry in hours.items():
        day_key = str(day).strip().lower()
        if day_key not in DAYS or not isinstance(entry, dict):
            continue
        opens = str(entry.get("open") or "").strip()
        closes = str(entry.get("close") or "").strip()
        if _HHMM.match(opens) and _HHMM.match(closes):
            cleaned[day_key] = {"open": opens, "close": closes}
    return {day: cleaned[day] for day in DAYS if day in cleaned}


def valid_coordinates(value: Any) -> Optional[Coordinates]:
    coordinates = Coordinates.parse(value)
    if coordinates is None or not coordinates.is_valid():
        return None
    return coordinates


def build_record(fields: Dict[str, Any], *, default_phone_region: Optional[str] = None, **provenance: Any) -> CanonicalRecord:
    """Apply the field validators to a loose field mapping. Confidence is left for the caller."""
    categories = normalize_categories(fields.get("categories") or [])
    category = collapse_whitespace(fields.get("category"))
    category = category.lower() if category else primary_category(categories)
    if category and category not in categories:
        categories.insert(0, category)

    service_type = normalize_service_type(fields.get("service_type"))
    if service_type is None:
        service_type = infer_service_type(fields.get("service_options") or {}, categories)

    record = CanonicalRecord(
        name=collapse_whitespace(fields.get("name")),
        address=collapse_whitespace(fields.get("address")),
        coordinates=valid_coordinates(fields.get("coordinates")),
        category=category,
        service_type=service_type,
        hours=normalize_hours(fields.get("hours")),
        price_range=normalize_price_range(fields.get("price_range"), fields.get("price_level")),
        images=[str(url) for url in fields.get("images") or [] if url],
        phone=normalize_phone(fields.get("phone"), default_phone_region),
        website=sanitize_website(fields.get("website")),
        rating=clamp_rating(fields.get("rating")),
        description=collapse_whitespace(fields.get("description")),
        categories=categories,
        **provenance,
    )
    record.missing_fields = missing_required(record)
    return record


def _structured_fields(candidate: CandidateRecord) -> Dict[str, Any]:
    return {
        "name": candidate.name,
        "address": candidate.address,
        "coordinates": candidate.coordinates,
        "categories": candidate.categories,
        "service_options": candidate.service_options,
        "hours": candidate.hours,
        "price_range": candidate.price_range,
        "price_level": candidate.price_level,
        "images": candidate.images,
        "phone": candidate.phone,
        "website": candidate.website,
        "rating": candidate.rating,
        "description": candidate.description,
    }


def _provenance(candidate: Optional[CandidateRecord]) -> Dict[str, Any]:
    if candidate is None:
        return {"source": "user", "source_kind": SourceKind.TEXT}
    return {
        "source": candidate.source,
        "source_kind": candidate.source_kind,
        "source_url": candidate.source_url,
        "external_id": candidate.external_id,
    }


def _scale_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence > 1.0:
        confidence = confidence / 100.0
    return min(max(confidence, 0.0), 1.0)


class ExtractionNormalizer:
    """Normalize candidates into CanonicalRecords, asking the oracle about free text."""

    def __init__(self, oracle, *, max_clarify_rounds: int = 3, default_phone_region: Optional[str] = None) -> None:
        self.oracle = oracle
        self.max_clarify_rounds = max(1, max_clarify_rounds)
        self.default_phone_region = default_phone_region

    def normalize(
        self,
        source: Union[CandidateRecord, str],
        conversation: Optional[Conversation] = None,
        interactive: bool = True,
    ) -> NormalizationResult:
        if isinstance(source, CandidateRecord) and source.source_kind is SourceKind.STRUCTURED:
            return self._normalize_structured(source)
        if isinstance(source, CandidateRecord):
            return self._normalize_text(source.text or "", conversation, interactive, candidate=source)
        return self._normalize_text(str(source or ""), conversation, interactive)

    def _normalize_structured(self, candidate: CandidateRecord) -> NormalizationResult:
        record = build_record(
            _structured_fields(candidate),
            default_phone_region=self.default_phone_region,
            **_provenance(candidate),
        )
        present = len(REQUIRED_FIELDS) - len(record.missing_fields)
        record.confidence = round(present / len(REQUIRED_FIELDS), 4)
        return NormalizationResult(status=NormalizationStatus.COMPLETE, record=record, action=SuggestedAction.ACCEPT)

    def _normalize_text(
        self,
        text: str,
        conversation: Optional[Conversation],
        interactive: bool,
        candidate: Optional[CandidateRecord] = None,
    ) -> NormalizationResult:
        turns = [turn if isinstance(turn, ConversationTurn) else ConversationTurn.from_dict(turn) for turn in conversation or []]
        rounds = sum(1 for turn in turns if turn.role == "assistant")
        provenance = _provenance(candidate)

        result = self._ask_oracle(text, turns)
        if result is None:
            record = build_record({}, default_phone_region=self.default_phone_region, **provenance)
            record.confidence = 0.0
            return NormalizationResult(
                status=NormalizationStatus.COMPLETE,
                record=record,
                action=SuggestedAction.REQUEST_MANUAL_INPUT,
                rounds=rounds,
            )

        record = build_record(result.fields, default_phone_region=self.default_phone_region, **provenance)
        confidence = _scale_confidence(result.confidence)
        if record.missing_fields:
            confidence = min(confidence, MAX_CONFIDENCE_WITH_GAPS)
        record.confidence = confidence

        action = result.suggested_action
        if action is SuggestedAction.ACCEPT:
            return NormalizationResult(status=NormalizationStatus.COMPLETE, record=record, action=action, rounds=rounds)
        if action in (
            SuggestedAction.ASK_CLARIFY,
            SuggestedAction.ASK_CHOICE,
            SuggestedAction.REQUEST_WEB_SEARCH,
            SuggestedAction.REQUEST_MANUAL_INPUT,
        ):
            if interactive and rounds < self.max_clarify_rounds:
                return NormalizationResult(
                    status=NormalizationStatus.NEEDS_INPUT,
                    record=record,
                    action=action,
                    follow_up=result.follow_up or _default_question(record.missing_fields),
                    choices=list(result.choices) if action is SuggestedAction.ASK_CHOICE else [],
                    rounds=rounds,
                )
            logger.info(
                "Finalising extraction after %d rounds with missing fields %s (action=%s)",
                rounds,
                record.missing_fields,
                action.value,
            )
            return NormalizationResult(status=NormalizationStatus.COMPLETE, record=record, action=action, rounds=rounds)
        raise ValueError(f"unhandled oracle action: {action!r}")

    def _ask_oracle(self, text: str, turns: List[ConversationTurn]) -> Optional[OracleResult]:
        for attempt in range(1, self.max_clarify_rounds + 1):
            try:
                return self.oracle.extract(text, turns)
            except ExtractionFailure as exc:
                logger.warning("Extraction attempt %d/%d failed: %s", attempt, self.max_clarify_rounds, exc)
        logger.error("Extraction degraded after %d failed attempts", self.max_clarify_rounds)
        return None


def _default_question(missing_fields: Sequence[str]) -> str:
    if "name" in missing_fields:
        return "What's the name of the place?"
    if "address" in missing_fields:
        return "What's the full address, including city and country?"
    if missing_fields:
        return f"Could you tell me the {missing_fields[0].replace('_', ' ')}?"
    return "Is there anything else you'd like to add?"
