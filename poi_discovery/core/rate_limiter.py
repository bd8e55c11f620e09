"""
Sliding-window rate limiter for metered external APIs.
"""
import logging
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Blocks callers until a per-source request budget allows another call.
    """

    LIMITS = {
        "google_places": {"limit": 50, "period": 1},     # Places QPS guideline
        "google_geocode": {"limit": 50, "period": 1},
        "serpapi": {"limit": 100, "period": 3600},       # 100/hour (conservative)
        "web_harvest": {"limit": 60, "period": 60},      # 1/sec average
    }

    def __init__(
        self,
        limits: Optional[Dict[str, Dict[str, float]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.limits = dict(self.LIMITS if limits is None else limits)
        self._calls: Dict[str, List[float]] = defaultdict(list)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

    def acquire(self, source: str) -> None:
        """Wait until the rate limit allows a request."""
        if source not in self.limits:
            return

        config = self.limits[source]

        while True:
            with self._lock:
                now = self._clock()
                self._calls[source] = [t for t in self._calls[source] if t > now - config["period"]]

                if len(self._calls[source]) < config["limit"]:
                    self._calls[source].append(now)
                    return

                oldest = min(self._calls[source])
                wait_time = oldest + config["period"] - now + 0.01
            logger.debug("Rate limited on %s, waiting %.2fs", source, wait_time)
            self._sleep(min(wait_time, 5))

    def get_usage(self, source: str) -> Dict[str, float]:
        """Return current usage stats for a source."""
        if source not in self.limits:
            return {"used": 0, "limit": 0}

        config = self.limits[source]
        now = self._clock()
        with self._lock:
            recent = [t for t in self._calls[source] if t > now - config["period"]]
        return {
            "used": len(recent),
            "limit": config["limit"],
            "period": config["period"],
        }

    def usage(self) -> Dict[str, Dict[str, float]]:
        """Usage for every configured source, as reported by ``/discovery/stats``."""
        return {source: self.get_usage(source) for source in sorted(self.limits)}
