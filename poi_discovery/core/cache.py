"""In-process TTL cache shielding external calls and recomputation.

Entries are evicted lazily on read (an expired entry is treated as absent) and,
optionally, by a background sweeper thread. Writes to the same key are
last-writer-wins.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    expires_at: float


def make_key(namespace: str, **params: Any) -> str:
    """Build a deterministic key from a namespace and query parameters."""
    payload = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha1(payload.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class TTLCache:
    """Thread-safe keyed store with per-entry expiry."""

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    def get(self, key: str, default: Any = None) -> Any:
        found, value = self.lookup(key)
        return value if found else default

    def lookup(self, key: str) -> Tuple[bool, Any]:
        """Return ``(found, value)`` so cached ``None`` values stay distinguishable."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return False, None
            if now >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return False, None
            self._hits += 1
            return True, entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        logger.debug("Cache SET %s (ttl=%.0fs)", key, ttl)

    def get_or_compute(self, key: str, compute: Callable[[], Any], ttl: Optional[float] = None) -> Tuple[Any, bool]:
        """Return ``(value, from_cache)``, calling ``compute`` only on a miss.

        ``compute`` runs outside the lock, so two threads missing the same key at
        once may both compute; the later write wins.
        """
        found, value = self.lookup(key)
        if found:
            logger.debug("Cache HIT %s", key)
            return value, True
        value = compute()
        self.set(key, value, ttl)
        return value, False

    def cleanup(self) -> int:
        """Evict every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Cache cleanup removed %d expired entries", len(expired))
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "hits": self._hits, "misses": self._misses}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start_sweeper(self, interval: float) -> threading.Thread:
        """Run :meth:`cleanup` every ``interval`` seconds on a daemon thread."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return self._sweeper
        self._stop_sweeper.clear()

        def _sweep() -> None:
            while not self._stop_sweeper.wait(interval):
                self.cleanup()

        self._sweeper = threading.Thread(target=_sweep, name="cache-sweeper", daemon=True)
        self._sweeper.start()
        return self._sweeper

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None
