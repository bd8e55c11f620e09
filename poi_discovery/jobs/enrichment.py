"""Priority queue, worker pool and handler for asynchronous record enrichment."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from poi_discovery.core.errors import QueueFull, QueueItemExhausted
from poi_discovery.core.models import (
    REQUIRED_FIELDS,
    CanonicalRecord,
    Priority,
    QueueItem,
    QueueItemState,
    SourceKind,
    missing_required,
    utcnow,
)
from poi_discovery.etl.normalize import (
    MAX_CONFIDENCE_WITH_GAPS,
    clamp_rating,
    infer_service_type,
    normalize_categories,
    normalize_hours,
    normalize_price_range,
    primary_category,
    valid_coordinates,
)
from poi_discovery.etl.transform import opening_hours, photo_urls
from poi_discovery.vendors.web_pages import normalize_phone, sanitize_website

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = 30.0
DEFAULT_MAX_DELAY = 900.0
DEFAULT_MAX_ATTEMPTS = 5
CANCELLED = "cancelled"


def backoff_delay(attempts: int, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY) -> float:
    return min(base_delay * (2 ** max(attempts - 1, 0)), max_delay)


class EnrichmentQueue:
    """Shared priority structure: priority first, then FIFO by original enqueue time.

    Items stay active (queued, in_progress, retry_wait) until they finish or die.
    Dead items are kept for inspection; finished items only count towards totals.
    """

    def __init__(
        self,
        *,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_size: int = 0,
        clock: Callable[[], float] = time.monotonic,
        on_dead: Optional[Callable[[QueueItemExhausted], None]] = None,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max(1, max_attempts)
        self.max_size = max(0, max_size)
        self.worker_count = 0
        self._clock = clock
        self._on_dead = on_dead
        self._cond = threading.Condition()
        self._active: Dict[str, QueueItem] = {}
        self._dead: Dict[str, QueueItem] = {}
        self._sequence = itertools.count()
        self._completed = 0

    def __len__(self) -> int:
        with self._cond:
            return len(self._active)

    def get(self, record_id: str) -> Optional[QueueItem]:
        with self._cond:
            return self._active.get(record_id) or self._dead.get(record_id)

    def enqueue(self, record_id: str, priority: Priority = Priority.MEDIUM) -> QueueItem:
        """Add ``record_id`` or return its active item. Raises QueueFull when bounded and full."""
        priority = Priority(priority)
        with self._cond:
            existing = self._active.get(record_id)
            if existing is not None:
                return existing
            if self.max_size and len(self._active) >= self.max_size:
                raise QueueFull(f"enrichment queue is full ({self.max_size} items)")
            now = self._clock()
            item = QueueItem(
                record_id=record_id,
                priority=priority,
                enqueued_at=now,
                sequence=next(self._sequence),
                available_at=now,
            )
            self._dead.pop(record_id, None)
            self._active[record_id] = item
            self._cond.notify()
        logger.debug("Enqueued %s at %s priority", record_id, priority.value)
        return item

    def _promote_ready(self, now: float) -> None:
        for item in self._active.values():
            if item.state is QueueItemState.RETRY_WAIT and item.available_at <= now:
                item.state = QueueItemState.QUEUED

    def _next_ready(self) -> Optional[QueueItem]:
        self._promote_ready(self._clock())
        ready = [item for item in self._active.values() if item.state is QueueItemState.QUEUED]
        if not ready:
            return None
        return min(ready, key=lambda item: item.sort_key)

    def _next_wakeup(self) -> Optional[float]:
        waiting = [item.available_at for item in self._active.values() if item.state is QueueItemState.RETRY_WAIT]
        if not waiting:
            return None
        return max(0.0, min(waiting) - self._clock())

    def dequeue(self, timeout: Optional[float] = None) -> Optional[QueueItem]:
        """Claim the next eligible item, waiting up to ``timeout`` seconds (None waits forever)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                item = self._next_ready()
                if item is not None:
                    item.state = QueueItemState.IN_PROGRESS
                    return item
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                wakeup = self._next_wakeup()
                waits = [value for value in (remaining, wakeup) if value is not None]
                self._cond.wait(min(waits) if waits else None)

    def complete(self, item: QueueItem) -> None:
        with self._cond:
            if item.state is not QueueItemState.IN_PROGRESS:
                return
            item.state = QueueItemState.DONE
            item.finished_at = self._clock()
            if self._active.get(item.record_id) is item:
                del self._active[item.record_id]
            self._completed += 1
            self._cond.notify_all()

    def fail(self, item: QueueItem, error: BaseException) -> None:
        exhausted = None
        with self._cond:
            if item.state is not QueueItemState.IN_PROGRESS:
                return
            item.attempts += 1
            item.last_error = str(error) or type(error).__name__
            if item.attempts >= self.max_attempts:
                item.state = QueueItemState.DEAD
                item.finished_at = self._clock()
                if self._active.get(item.record_id) is item:
                    del self._active[item.record_id]
                self._dead[item.record_id] = item
                exhausted = QueueItemExhausted(item.record_id, item.attempts, item.last_error)
            else:
                delay = backoff_delay(item.attempts, self.base_delay, self.max_delay)
                item.state = QueueItemState.RETRY_WAIT
                item.available_at = self._clock() + delay
                logger.warning(
                    "Enrichment of %s failed (attempt %d/%d), retrying in %.0fs: %s",
                    item.record_id,
                    item.attempts,
                    self.max_attempts,
                    delay,
                    item.last_error,
                )
            self._cond.notify_all()

        if exhausted is not None:
            logger.error("Enrichment item moved to dead: %s", exhausted)
            if self._on_dead is not None:
                self._on_dead(exhausted)

    def cancel(self, record_id: str) -> bool:
        """Move an active item to dead out of band. Returns False when nothing was active."""
        with self._cond:
            item = self._active.pop(record_id, None)
            if item is None:
                return False
            item.state = QueueItemState.DEAD
            item.last_error = CANCELLED
            item.finished_at = self._clock()
            self._dead[record_id] = item
            self._cond.notify_all()
        logger.info("Cancelled enrichment of %s", record_id)
        return True

    def execute(self, item: QueueItem, handler: Callable[[str], None]) -> None:
        """Run ``handler`` for a claimed item outside the lock and record the outcome."""
        try:
            handler(item.record_id)
        except Exception as exc:  # noqa: BLE001
            self.fail(item, exc)
        else:
            self.complete(item)

    def process_next(self, handler: Callable[[str], None]) -> Optional[QueueItem]:
        item = self.dequeue(timeout=0)
        if item is None:
            return None
        self.execute(item, handler)
        return item

    def is_idle(self) -> bool:
        with self._cond:
            return self._idle()

    def _idle(self) -> bool:
        now = self._clock()
        for item in self._active.values():
            if item.state in (QueueItemState.QUEUED, QueueItemState.IN_PROGRESS):
                return False
            if item.state is QueueItemState.RETRY_WAIT and item.available_at <= now:
                return False
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is ready or running; retry_wait items in the future do not count."""
        with self._cond:
            return self._cond.wait_for(self._idle, timeout)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def stats(self) -> Dict[str, object]:
        with self._cond:
            by_state = {state.value: 0 for state in QueueItemState}
            by_priority = {priority.value: 0 for priority in Priority}
            for item in self._active.values():
                by_state[item.state.value] += 1
                if item.state in (QueueItemState.QUEUED, QueueItemState.RETRY_WAIT):
                    by_priority[item.priority.value] += 1
            by_state[QueueItemState.DONE.value] = self._completed
            by_state[QueueItemState.DEAD.value] = len(self._dead)
            return {
                "states": by_state,
                "queued_by_priority": by_priority,
                "active": len(self._active),
                "completed": self._completed,
                "dead": len(self._dead),
                "dead_items": [
                    {"record_id": item.record_id, "attempts": item.attempts, "last_error": item.last_error}
                    for item in self._dead.values()
                ],
                "max_size": self.max_size,
                "workers": self.worker_count,
            }


class EnrichmentWorkerPool:
    """Fixed set of daemon threads pulling from one EnrichmentQueue."""

    def __init__(
        self,
        queue: EnrichmentQueue,
        handler: Callable[[str], None],
        *,
        workers: int = 3,
        poll_interval: float = 0.5,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.workers = max(1, workers)
        self.poll_interval = poll_interval
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.workers):
            thread = threading.Thread(target=self._run, name=f"enrich-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        self.queue.worker_count = self.workers
        logger.info("Started %d enrichment workers", self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self.queue.wake()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self.queue.worker_count = 0

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queue.wait_idle(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            item = self.queue.dequeue(timeout=self.poll_interval)
            if item is None:
                continue
            self.queue.execute(item, self.handler)


class RecordEnricher:
    """Queue handler backfilling coordinates, photos and contact details from the maps platform."""

    def __init__(
        self,
        store,
        maps,
        *,
        freshness_days: int = 7,
        default_phone_region: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.maps = maps
        self.freshness = timedelta(days=freshness_days)
        self.default_phone_region = default_phone_region
        self._clock = clock

    def __call__(self, record_id: str) -> None:
        location = self.store.get_by_id(record_id)
        if location is None:
            logger.info("Location %s no longer exists; nothing to enrich", record_id)
            return

        now = self._clock()
        if location.last_enriched and now - location.last_enriched < self.freshness:
            logger.info("Location %s enriched at %s; skipping", record_id, location.last_enriched.isoformat())
            return

        record = CanonicalRecord.from_dict(location.record.to_dict())

        if record.coordinates is None and record.address:
            record.coordinates = valid_coordinates(self.maps.geocode(record.address))

        if self._needs_details(record):
            place_id = record.external_id
            if not place_id and record.name:
                place_id = self.maps.find_place(" ".join(part for part in (record.name, record.address) if part))
            if place_id:
                self._apply_details(record, self.maps.place_details(place_id))
                record.external_id = record.external_id or place_id

        record.missing_fields = missing_required(record)
        if record.source_kind is SourceKind.STRUCTURED:
            record.confidence = round((len(REQUIRED_FIELDS) - len(record.missing_fields)) / len(REQUIRED_FIELDS), 4)
        elif record.missing_fields:
            record.confidence = min(record.confidence, MAX_CONFIDENCE_WITH_GAPS)

        self.store.update_record(record_id, record, last_enriched=now, enrichment_source="google_places")
        logger.info("Enriched location %s (missing=%s)", record_id, record.missing_fields)

    @staticmethod
    def _needs_details(record: CanonicalRecord) -> bool:
        return (
            not record.images
            or not record.phone
            or not record.website
            or record.rating is None
            or record.coordinates is None
            or not record.category
            or not record.service_type
        )

    def _apply_details(self, record: CanonicalRecord, details: Dict[str, object]) -> None:
        if not details:
            return
        if record.coordinates is None:
            record.coordinates = valid_coordinates((details.get("geometry") or {}).get("location"))
        if not record.address:
            record.address = details.get("formatted_address")
        if not record.images:
            record.images = photo_urls(details)
        if not record.phone:
            record.phone = normalize_phone(
                details.get("international_phone_number") or details.get("formatted_phone_number"),
                self.default_phone_region,
            )
        if not record.website:
            record.website = sanitize_website(details.get("website"))
        if record.rating is None:
            record.rating = clamp_rating(details.get("rating"))
        if not record.hours:
            record.hours = normalize_hours(opening_hours(details))
        if not record.price_range:
            record.price_range = normalize_price_range(price_level=details.get("price_level"))

        types = normalize_categories(details.get("types") or [])
        for category in types:
            if category not in record.categories:
                record.categories.append(category)
        if not record.category:
            record.category = primary_category(types)
        if not record.service_type:
            record.service_type = infer_service_type({}, types)
