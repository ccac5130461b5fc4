"""Caller-side rate limiting per subscription (sliding 1 minute and 1 hour windows)."""

import bisect
import time
from collections import defaultdict

MINUTE = 60.0
HOUR = 3600.0


class RateLimiter:
    """In-memory sliding-window limiter.

    State is per process; a restart forgets recent sends, which at worst lets
    one extra window's worth of requests through.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._hits: dict[str, list[float]] = defaultdict(list)

    def reserve(self, key: str, per_minute: int, per_hour: int) -> float:
        """Admit one request now (returns 0) or return the seconds to wait.

        Only admitted requests are counted.
        """
        now = self._clock()
        hits = self._hits[key]
        del hits[: bisect.bisect_right(hits, now - HOUR)]

        wait = 0.0
        for window, limit in ((MINUTE, per_minute), (HOUR, per_hour)):
            in_window = len(hits) - bisect.bisect_right(hits, now - window)
            if limit > 0 and in_window >= limit:
                # oldest hit that must leave the window before one more fits
                wait = max(wait, hits[len(hits) - limit] + window - now)

        if wait <= 0:
            hits.append(now)
            return 0.0
        return wait
