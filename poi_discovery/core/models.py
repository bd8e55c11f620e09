"""Core data models shared by the discovery, deduplication and enrichment pipeline."""

from __future__ import annotations

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

REQUIRED_FIELDS = ("name", "address", "coordinates", "category", "service_type")

_WHITESPACE = re.compile(r"\s+")


class ScopeKind(str, Enum):
    GLOBAL = "global"
    CONTINENT = "continent"
    COUNTRY = "country"
    REGION = "region"


class SourceKind(str, Enum):
    STRUCTURED = "structured"
    TEXT = "text"


class ModerationState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    def can_transition(self, target: "ModerationState") -> bool:
        """Only pending records move, and only to a terminal moderator decision."""
        return self is ModerationState.PENDING and target in (ModerationState.APPROVED, ModerationState.REJECTED)


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class QueueItemState(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    RETRY_WAIT = "retry_wait"
    DONE = "done"
    DEAD = "dead"


class SuggestedAction(str, Enum):
    """Closed set of next steps the extraction oracle may ask for."""

    ACCEPT = "accept"
    ASK_CLARIFY = "ask_clarify"
    ASK_CHOICE = "ask_choice"
    REQUEST_WEB_SEARCH = "request_web_search"
    REQUEST_MANUAL_INPUT = "request_manual_input"

    @classmethod
    def from_raw(cls, raw: Any, default: "SuggestedAction" = None) -> "SuggestedAction":
        """Map the loosely-typed action strings models emit onto the enum."""
        fallback = default or cls.ASK_CLARIFY
        if raw is None:
            return fallback
        if isinstance(raw, cls):
            return raw
        key = re.sub(r"[\s_\-]", "", str(raw)).lower()
        return _ACTION_ALIASES.get(key, fallback)


_ACTION_ALIASES = {
    "accept": SuggestedAction.ACCEPT,
    "complete": SuggestedAction.ACCEPT,
    "done": SuggestedAction.ACCEPT,
    "askclarify": SuggestedAction.ASK_CLARIFY,
    "clarify": SuggestedAction.ASK_CLARIFY,
    "askchoice": SuggestedAction.ASK_CHOICE,
    "choice": SuggestedAction.ASK_CHOICE,
    "requestwebsearch": SuggestedAction.REQUEST_WEB_SEARCH,
    "performwebsearch": SuggestedAction.REQUEST_WEB_SEARCH,
    "websearch": SuggestedAction.REQUEST_WEB_SEARCH,
    "requestmanualinput": SuggestedAction.REQUEST_MANUAL_INPUT,
    "askuserfordata": SuggestedAction.REQUEST_MANUAL_INPUT,
    "manualinput": SuggestedAction.REQUEST_MANUAL_INPUT,
}


class NormalizationStatus(str, Enum):
    COMPLETE = "complete"
    NEEDS_INPUT = "needs_input"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def collapse_whitespace(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = _WHITESPACE.sub(" ", str(value)).strip()
    return cleaned or None


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float

    def is_valid(self) -> bool:
        return -90.0 <= self.lat <= 90.0 and -180.0 <= self.lng <= 180.0

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def parse(cls, value: Any) -> Optional["Coordinates"]:
        """Accept {lat,lng}, {latitude,longitude} or a (lat, lng) pair; None when unusable."""
        if value is None:
            return None
        if isinstance(value, Coordinates):
            return value
        try:
            if isinstance(value, dict):
                lat = value.get("lat", value.get("latitude"))
                lng = value.get("lng", value.get("longitude"))
            else:
                lat, lng = value
            if lat is None or lng is None:
                return None
            return cls(lat=float(lat), lng=float(lng))
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class Scope:
    """Geographic granularity requested for a discovery run."""

    kind: ScopeKind
    name: Optional[str] = None
    country: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ScopeKind):
            object.__setattr__(self, "kind", ScopeKind(str(self.kind).strip().lower()))
        object.__setattr__(self, "name", collapse_whitespace(self.name))
        object.__setattr__(self, "country", collapse_whitespace(self.country))
        if self.kind is not ScopeKind.GLOBAL and not self.name:
            raise ValueError(f"a {self.kind.value} scope needs a name")

    @property
    def label(self) -> str:
        if self.kind is ScopeKind.GLOBAL:
            return ""
        parts = [self.name]
        if self.country and self.country != self.name:
            parts.append(self.country)
        return ", ".join(parts)

    def cache_key(self) -> str:
        return f"{self.kind.value}:{self.name or ''}:{self.country or ''}".lower()

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"kind": self.kind.value, "name": self.name, "country": self.country}


def fingerprint(
    name: Optional[str],
    address: Optional[str],
    coordinates: Optional[Coordinates],
    text: Optional[str] = None,
) -> str:
    """Derive a stable identity key from the identity-relevant fields."""
    parts = [
        (collapse_whitespace(name) or "").lower(),
        (collapse_whitespace(address) or "").lower(),
        f"{coordinates.lat:.4f},{coordinates.lng:.4f}" if coordinates else "",
        (collapse_whitespace(text) or "").lower(),
    ]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


@dataclass(slots=True)
class CandidateRecord:
    """Unverified location proposed by a source adapter."""

    source: str
    source_kind: SourceKind = SourceKind.STRUCTURED
    name: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    categories: List[str] = field(default_factory=list)
    rating: Optional[float] = None
    price_level: Optional[int] = None
    price_range: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    service_options: Dict[str, bool] = field(default_factory=dict)
    hours: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    images: List[str] = field(default_factory=list)
    description: Optional[str] = None
    external_id: Optional[str] = None
    source_url: Optional[str] = None
    text: Optional[str] = None
    candidate_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    from_cache: bool = False
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.candidate_id

    def fingerprint(self) -> str:
        return fingerprint(self.name, self.address, self.coordinates, self.text)


@dataclass(slots=True)
class CanonicalRecord:
    """Normalized, schema-conformant location ready for persistence."""

    name: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    category: Optional[str] = None
    service_type: Optional[str] = None
    hours: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    price_range: Optional[str] = None
    images: List[str] = field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    description: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    confidence: float = 0.0
    missing_fields: List[str] = field(default_factory=list)
    source: str = ""
    source_kind: SourceKind = SourceKind.STRUCTURED
    source_url: Optional[str] = None
    external_id: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    def fingerprint(self) -> str:
        return fingerprint(self.name, self.address, self.coordinates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "coordinates": self.coordinates.to_dict() if self.coordinates else None,
            "category": self.category,
            "service_type": self.service_type,
            "hours": self.hours,
            "price_range": self.price_range,
            "images": list(self.images),
            "phone": self.phone,
            "website": self.website,
            "rating": self.rating,
            "description": self.description,
            "categories": list(self.categories),
            "confidence": self.confidence,
            "missing_fields": list(self.missing_fields),
            "source": self.source,
            "source_kind": self.source_kind.value,
            "source_url": self.source_url,
            "external_id": self.external_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalRecord":
        return cls(
            name=data.get("name"),
            address=data.get("address"),
            coordinates=Coordinates.parse(data.get("coordinates")),
            category=data.get("category"),
            service_type=data.get("service_type"),
            hours=dict(data.get("hours") or {}),
            price_range=data.get("price_range"),
            images=list(data.get("images") or []),
            phone=data.get("phone"),
            website=data.get("website"),
            rating=data.get("rating"),
            description=data.get("description"),
            categories=list(data.get("categories") or []),
            confidence=float(data.get("confidence") or 0.0),
            missing_fields=list(data.get("missing_fields") or []),
            source=data.get("source") or "",
            source_kind=SourceKind(data.get("source_kind") or SourceKind.STRUCTURED.value),
            source_url=data.get("source_url"),
            external_id=data.get("external_id"),
        )


def missing_required(record: Any, fields: Iterable[str] = REQUIRED_FIELDS) -> List[str]:
    """Names of required fields that are absent or empty on ``record``."""
    missing = []
    for name in fields:
        value = getattr(record, name, None)
        if value is None or value == "" or value == [] or value == {}:
            missing.append(name)
    return missing


@dataclass(frozen=True)
class DuplicateVerdict:
    is_duplicate: bool
    matched_record_id: Optional[str] = None
    similarity: float = 0.0
    matched_fields: FrozenSet[str] = frozenset()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "matched_record_id": self.matched_record_id,
            "similarity": round(self.similarity, 4),
            "matched_fields": sorted(self.matched_fields),
        }


@dataclass(slots=True)
class StoredLocation:
    """A persisted location document together with its moderation state."""

    id: str
    record: CanonicalRecord
    status: ModerationState = ModerationState.PENDING
    submitted_at: datetime = field(default_factory=utcnow)
    last_enriched: Optional[datetime] = None
    enrichment_source: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        return self.record.name

    @property
    def address(self) -> Optional[str]:
        return self.record.address

    @property
    def coordinates(self) -> Optional[Coordinates]:
        return self.record.coordinates

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "record": self.record.to_dict(),
            "status": self.status.value,
            "submitted_at": self.submitted_at.isoformat(),
            "last_enriched": self.last_enriched.isoformat() if self.last_enriched else None,
            "enrichment_source": self.enrichment_source,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "StoredLocation":
        last_enriched = document.get("last_enriched")
        submitted_at = document.get("submitted_at")
        return cls(
            id=str(document["id"]),
            record=CanonicalRecord.from_dict(document.get("record") or {}),
            status=ModerationState(document.get("status") or ModerationState.PENDING.value),
            submitted_at=datetime.fromisoformat(submitted_at) if submitted_at else utcnow(),
            last_enriched=datetime.fromisoformat(last_enriched) if last_enriched else None,
            enrichment_source=document.get("enrichment_source"),
        )


@dataclass(slots=True)
class QueueItem:
    record_id: str
    priority: Priority
    enqueued_at: float
    sequence: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    state: QueueItemState = QueueItemState.QUEUED
    available_at: float = 0.0
    finished_at: Optional[float] = None

    @property
    def sort_key(self):
        return (self.priority.rank, self.enqueued_at, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "priority": self.priority.value,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class ConversationTurn:
    role: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(role=str(data.get("role") or "user"), content=str(data.get("content") or ""))

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class OracleResult:
    """Structured answer of the extraction oracle for one call."""

    fields: Dict[str, Any]
    confidence: float
    missing_fields: List[str] = field(default_factory=list)
    suggested_action: SuggestedAction = SuggestedAction.ASK_CLARIFY
    follow_up: Optional[str] = None
    choices: List[str] = field(default_factory=list)


@dataclass(slots=True)
class NormalizationResult:
    status: NormalizationStatus
    record: CanonicalRecord
    action: SuggestedAction = SuggestedAction.ACCEPT
    follow_up: Optional[str] = None
    choices: List[str] = field(default_factory=list)
    rounds: int = 0

    @property
    def needs_input(self) -> bool:
        return self.status is NormalizationStatus.NEEDS_INPUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "action": self.action.value,
            "follow_up": self.follow_up,
            "choices": list(self.choices),
            "rounds": self.rounds,
            "record": self.record.to_dict(),
        }


@dataclass(slots=True)
class SourceResult:
    """Outcome of one adapter call: possibly partial candidates plus an error tag."""

    source: str
    candidates: List[CandidateRecord] = field(default_factory=list)
    error: Optional[str] = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None
