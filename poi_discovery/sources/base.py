"""Shared behaviour of discovery source adapters."""

import dataclasses
import logging
from typing import Iterable, List, Optional

from poi_discovery.core.cache import TTLCache, make_key
from poi_discovery.core.errors import SourceUnavailable
from poi_discovery.core.models import CandidateRecord, Scope, SourceKind, SourceResult

logger = logging.getLogger(__name__)


class SourceAdapter:
    """Base adapter: iterate queries, consult the cache, and turn failures into error tags.

    Subclasses implement :meth:`queries` and :meth:`fetch`. ``fetch`` raises
    :class:`SourceUnavailable` for anything the caller should see as an outage.
    """

    name = "source"
    kind = SourceKind.STRUCTURED
    priority = 100

    def __init__(self, *, cache: Optional[TTLCache] = None) -> None:
        self.cache = cache

    def queries(self, scope: Scope) -> Iterable[str]:
        raise NotImplementedError

    def fetch(self, query: str, scope: Scope) -> List[CandidateRecord]:
        raise NotImplementedError

    def cache_key(self, query: str, scope: Scope) -> str:
        return make_key(f"source:{self.name}", query=query, scope=scope.cache_key())

    def discover(self, scope: Scope) -> SourceResult:
        candidates: List[CandidateRecord] = []
        errors: List[str] = []
        hits = 0
        calls = 0

        for query in self.queries(scope):
            calls += 1
            key = self.cache_key(query, scope)
            if self.cache is not None:
                found, cached = self.cache.lookup(key)
                if found:
                    hits += 1
                    candidates.extend(dataclasses.replace(candidate, from_cache=True) for candidate in cached)
                    continue
            try:
                fetched = self.fetch(query, scope)
            except SourceUnavailable as exc:
                logger.warning("%s unavailable for query=%s: %s", self.name, query, exc.reason)
                errors.append(exc.reason)
                continue
            except Exception as exc:  # noqa: BLE001
                logger.exception("%s failed unexpectedly for query=%s", self.name, query)
                errors.append(f"{type(exc).__name__}: {exc}")
                continue
            if self.cache is not None:
                self.cache.set(key, fetched)
            candidates.extend(fetched)

        logger.info(
            "%s returned %d candidates for %s (%d/%d cached, %d errors)",
            self.name,
            len(candidates),
            scope.label or "global",
            hits,
            calls,
            len(errors),
        )
        return SourceResult(
            source=self.name,
            candidates=candidates,
            error=f"source_unavailable: {'; '.join(errors)}" if errors else None,
            from_cache=calls > 0 and hits == calls,
        )
