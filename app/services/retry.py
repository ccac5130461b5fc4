"""Retry scheduling — backoff math, the delivery state machine and a delayed work queue."""

import asyncio
import heapq
import itertools
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional

from app.config import get_settings
from app.schemas import RetryConfig


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    RETRY = "retry"
    SUCCESS = "success"
    ABANDONED = "abandoned"
    CANCELLED = "cancelled"


UNFINISHED_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.RETRY.value)
REPLAYABLE_STATUSES = (DeliveryStatus.ABANDONED.value, DeliveryStatus.CANCELLED.value)


def compute_backoff_ms(
    retry_number: int,
    retry_delay: int,
    multiplier: float,
    ceiling: Optional[int] = None,
    jitter: float = 0.0,
) -> int:
    """Delay before retry ``retry_number`` (1-based): retry_delay * multiplier^(n-1), capped."""
    if retry_number < 1:
        raise ValueError("retry_number starts at 1")
    delay = retry_delay * (multiplier ** (retry_number - 1))
    if jitter:
        delay += delay * jitter * random.random()
    if ceiling is not None:
        delay = min(delay, ceiling)
    return int(delay)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


@dataclass(frozen=True)
class RetryDecision:
    status: DeliveryStatus
    delay_ms: Optional[int] = None

    @property
    def is_final(self) -> bool:
        return self.status != DeliveryStatus.RETRY


def decide(
    success: bool,
    attempts_made: int,
    max_attempts: int,
    retry_config: RetryConfig,
    retry_after: Optional[float] = None,
    attempt_offset: int = 0,
) -> RetryDecision:
    """Next state of a delivery after an attempt.

    ``attempts_made`` and ``max_attempts`` are absolute counts on the delivery row;
    ``attempt_offset`` is the number of attempts made before the last replay, so the
    backoff restarts from ``retry_delay`` after a replay. A Retry-After value (from a
    429) replaces the computed delay for this retry only.
    """
    if success:
        return RetryDecision(DeliveryStatus.SUCCESS)
    if attempts_made >= max_attempts:
        return RetryDecision(DeliveryStatus.ABANDONED)

    settings = get_settings()
    if retry_after is not None:
        delay_ms = int(min(retry_after, settings.webhook_max_retry_after_seconds) * 1000)
    else:
        delay_ms = compute_backoff_ms(
            attempts_made - attempt_offset,
            retry_config.retry_delay,
            retry_config.backoff_multiplier,
            ceiling=settings.webhook_max_retry_delay_ms,
            jitter=settings.webhook_retry_jitter,
        )
    return RetryDecision(DeliveryStatus.RETRY, delay_ms)


class DelayedQueue:
    """Keys ordered by due time. ``get()`` sleeps until the earliest key is due.

    Re-putting a key reschedules it; superseded heap entries are skipped lazily.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._heap: list[tuple[float, int, str]] = []
        self._scheduled: dict[str, float] = {}
        self._counter = itertools.count()
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._scheduled)

    def __contains__(self, key: str) -> bool:
        return key in self._scheduled

    def put(self, key: str, delay: float = 0.0) -> None:
        due = self._clock() + max(0.0, delay)
        self._scheduled[key] = due
        heapq.heappush(self._heap, (due, next(self._counter), key))
        self._changed.set()

    def discard(self, key: str) -> None:
        self._scheduled.pop(key, None)

    def _drop_stale(self) -> None:
        while self._heap:
            due, _, key = self._heap[0]
            if self._scheduled.get(key) == due:
                return
            heapq.heappop(self._heap)

    async def get(self) -> str:
        while True:
            self._drop_stale()
            timeout = None
            if self._heap:
                due, _, key = self._heap[0]
                timeout = due - self._clock()
                if timeout <= 0:
                    heapq.heappop(self._heap)
                    del self._scheduled[key]
                    return key
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
