"""Discovery runs: fan out to sources, dedupe, normalize, persist and schedule enrichment."""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from poi_discovery.core.errors import PersistenceFailure, QueueFull
from poi_discovery.core.models import (
    CandidateRecord,
    ModerationState,
    Priority,
    Scope,
    SourceKind,
    SourceResult,
    StoredLocation,
    collapse_whitespace,
    utcnow,
)
from poi_discovery.etl.dedup import KnownRecords

logger = logging.getLogger(__name__)

DEFAULT_ADAPTER_TIMEOUT = 60.0


@dataclass(slots=True)
class SavedEntry:
    record_id: str
    name: Optional[str]
    source: str
    confidence: float
    missing_fields: List[str] = field(default_factory=list)
    enqueued: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "name": self.name,
            "source": self.source,
            "confidence": self.confidence,
            "missing_fields": list(self.missing_fields),
            "enqueued": self.enqueued,
        }


@dataclass(slots=True)
class DuplicateEntry:
    candidate_id: str
    name: Optional[str]
    source: str
    against: str
    matched_record_id: Optional[str]
    similarity: float
    matched_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "name": self.name,
            "source": self.source,
            "against": self.against,
            "matched_record_id": self.matched_record_id,
            "similarity": self.similarity,
            "matched_fields": list(self.matched_fields),
        }


@dataclass(slots=True)
class RunError:
    kind: str
    source: str
    message: str
    candidate_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "source": self.source, "message": self.message, "candidate_id": self.candidate_id}


@dataclass(slots=True)
class DiscoverySummary:
    run_id: str
    scope: Scope
    started_at: datetime
    finished_at: Optional[datetime] = None
    sources: List[str] = field(default_factory=list)
    candidates: int = 0
    cached_sources: List[str] = field(default_factory=list)
    saved: List[SavedEntry] = field(default_factory=list)
    duplicates: List[DuplicateEntry] = field(default_factory=list)
    errors: List[RunError] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "sources": len(self.sources),
            "candidates": self.candidates,
            "saved": len(self.saved),
            "duplicates": len(self.duplicates),
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "scope": self.scope.to_dict(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sources": list(self.sources),
            "cached_sources": list(self.cached_sources),
            "counts": self.counts,
            "saved": [entry.to_dict() for entry in self.saved],
            "duplicates": [entry.to_dict() for entry in self.duplicates],
            "errors": [entry.to_dict() for entry in self.errors],
        }


class DiscoveryOrchestrator:
    """Coordinates one discovery run across every configured source adapter."""

    def __init__(
        self,
        store,
        sources: Sequence[Any],
        normalizer,
        detector,
        queue,
        *,
        adapter_timeout: float = DEFAULT_ADAPTER_TIMEOUT,
    ) -> None:
        self.store = store
        self.sources = sorted(sources, key=lambda adapter: (adapter.priority, adapter.name))
        self.normalizer = normalizer
        self.detector = detector
        self.queue = queue
        self.adapter_timeout = adapter_timeout

    @property
    def source_names(self) -> List[str]:
        return [adapter.name for adapter in self.sources]

    def get_queue_stats(self) -> Dict[str, Any]:
        return self.queue.stats()

    def run_discovery(self, scope: Scope, sources: Optional[Sequence[str]] = None) -> DiscoverySummary:
        """Run every requested adapter for ``scope``.

        Per-record save failures are reported in the summary; PersistenceUnavailable
        from the store, at startup or mid-run, aborts the run.
        """
        summary = DiscoverySummary(run_id=uuid.uuid4().hex, scope=scope, started_at=utcnow())
        existing = KnownRecords(self.store.get_all())
        logger.info("Discovery %s for %s: %d existing locations", summary.run_id, scope.label or "global", len(existing))

        adapters = self._select(sources, summary)
        summary.sources = [adapter.name for adapter in adapters]
        results = self._fan_out(adapters, scope, summary)

        merged: List[CandidateRecord] = []
        for adapter in adapters:
            result = results.get(adapter.name)
            if result is None:
                continue
            if result.from_cache:
                summary.cached_sources.append(adapter.name)
            merged.extend(result.candidates)
        summary.candidates = len(merged)

        survivors = self._dedupe_batch(merged, summary)
        for candidate in survivors:
            self._process(candidate, existing, summary)

        summary.finished_at = utcnow()
        logger.info("Discovery %s finished: %s", summary.run_id, summary.counts)
        return summary

    def _select(self, names: Optional[Sequence[str]], summary: DiscoverySummary) -> List[Any]:
        if not names:
            return list(self.sources)
        wanted = set(names)
        for unknown in sorted(wanted - set(self.source_names)):
            summary.errors.append(RunError("source_unavailable", unknown, "unknown source"))
        return [adapter for adapter in self.sources if adapter.name in wanted]

    def _fan_out(self, adapters: Sequence[Any], scope: Scope, summary: DiscoverySummary) -> Dict[str, SourceResult]:
        results: Dict[str, SourceResult] = {}
        if not adapters:
            return results

        executor = ThreadPoolExecutor(max_workers=len(adapters), thread_name_prefix="discovery")
        try:
            futures = {adapter.name: executor.submit(adapter.discover, scope) for adapter in adapters}
            deadline = time.monotonic() + self.adapter_timeout
            for adapter in adapters:
                remaining = max(0.0, deadline - time.monotonic())
                try:
                    result = futures[adapter.name].result(timeout=remaining)
                except FuturesTimeoutError:
                    message = f"source_unavailable: timed out after {self.adapter_timeout:.0f}s"
                    logger.warning("%s %s", adapter.name, message)
                    summary.errors.append(RunError("source_unavailable", adapter.name, message))
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Source %s raised during discovery", adapter.name)
                    summary.errors.append(RunError("source_unavailable", adapter.name, f"source_unavailable: {exc}"))
                    continue
                if result.error:
                    summary.errors.append(RunError("source_unavailable", adapter.name, result.error))
                results[adapter.name] = result
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def _dedupe_batch(self, candidates: Sequence[CandidateRecord], summary: DiscoverySummary) -> List[CandidateRecord]:
        survivors: List[CandidateRecord] = []
        structured: List[CandidateRecord] = []
        seen_text: Dict[str, str] = {}

        for candidate in candidates:
            if candidate.source_kind is SourceKind.TEXT:
                key = (collapse_whitespace(candidate.text) or "").lower()
                if key and key in seen_text:
                    summary.duplicates.append(
                        DuplicateEntry(
                            candidate_id=candidate.candidate_id,
                            name=candidate.name,
                            source=candidate.source,
                            against="batch",
                            matched_record_id=seen_text[key],
                            similarity=1.0,
                        )
                    )
                    continue
                if key:
                    seen_text[key] = candidate.candidate_id
                survivors.append(candidate)
                continue

            verdict = self.detector.check(candidate, structured)
            if verdict.is_duplicate:
                summary.duplicates.append(
                    DuplicateEntry(
                        candidate_id=candidate.candidate_id,
                        name=candidate.name,
                        source=candidate.source,
                        against="batch",
                        matched_record_id=verdict.matched_record_id,
                        similarity=verdict.similarity,
                        matched_fields=sorted(verdict.matched_fields),
                    )
                )
                continue
            structured.append(candidate)
            survivors.append(candidate)
        return survivors

    def _process(self, candidate: CandidateRecord, existing: KnownRecords, summary: DiscoverySummary) -> None:
        result = self.normalizer.normalize(candidate, interactive=False)
        record = result.record
        if not record.name and not record.address:
            summary.errors.append(
                RunError("extraction_empty", candidate.source, "no name or address extracted", candidate.candidate_id)
            )
            return

        verdict = self.detector.check(record, existing)
        if verdict.is_duplicate:
            logger.info(
                "DuplicateConflict: %s from %s matches %s (similarity=%.2f)",
                record.name,
                candidate.source,
                verdict.matched_record_id,
                verdict.similarity,
            )
            summary.duplicates.append(
                DuplicateEntry(
                    candidate_id=candidate.candidate_id,
                    name=record.name,
                    source=candidate.source,
                    against="existing",
                    matched_record_id=verdict.matched_record_id,
                    similarity=verdict.similarity,
                    matched_fields=sorted(verdict.matched_fields),
                )
            )
            return

        location = StoredLocation(id="", record=record, status=ModerationState.PENDING)
        try:
            record_id = self.store.save(location)
        except PersistenceFailure as exc:
            logger.warning("Could not save %s from %s: %s", record.name, candidate.source, exc)
            summary.errors.append(RunError("persistence_failure", candidate.source, str(exc), candidate.candidate_id))
            return
        existing.append(location)

        if record.missing_fields:
            logger.warning(
                "ExtractionLowConfidence: %s saved with confidence %.2f, missing %s",
                record_id,
                record.confidence,
                record.missing_fields,
            )

        entry = SavedEntry(
            record_id=record_id,
            name=record.name,
            source=candidate.source,
            confidence=record.confidence,
            missing_fields=list(record.missing_fields),
        )
        priority = Priority.HIGH if candidate.source_kind is SourceKind.STRUCTURED else Priority.MEDIUM
        try:
            self.queue.enqueue(record_id, priority)
            entry.enqueued = True
        except QueueFull as exc:
            logger.warning("Enrichment queue rejected %s: %s", record_id, exc)
            summary.errors.append(RunError("queue_full", candidate.source, str(exc), candidate.candidate_id))
        summary.saved.append(entry)
