from __future__ import annotations

"""Token-bucket rate limiting for outbound camera notifications."""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

OVERVIEW_COOLDOWN_SECONDS = 10.0


class TokenBucket:
    """Bucket that gains `quantum` tokens per elapsed `fill_interval`, up to `capacity`.

    Refill happens in whole intervals counted from creation, so a bucket of
    20 tokens refilled every minute gives back all 20 at once rather than one
    every three seconds. The bucket starts full. Taking never blocks.
    """

    def __init__(self, fill_interval: float, capacity: int, quantum: int, clock: Clock = time.monotonic) -> None:
        if fill_interval <= 0:
            raise ValueError("fill_interval must be > 0")
        if capacity <= 0 or quantum <= 0:
            raise ValueError("capacity and quantum must be > 0")
        self.fill_interval = fill_interval
        self.capacity = capacity
        self.quantum = quantum
        self._clock = clock
        self._start = clock()
        self._latest_tick = 0
        self._tokens = capacity
        self._lock = threading.Lock()

    def _adjust(self) -> None:
        tick = int((self._clock() - self._start) // self.fill_interval)
        if tick > self._latest_tick:
            self._tokens = min(self.capacity, self._tokens + (tick - self._latest_tick) * self.quantum)
            self._latest_tick = tick

    def take_available(self, count: int = 1) -> int:
        """Take up to `count` tokens and return how many were taken."""
        with self._lock:
            self._adjust()
            taken = min(count, self._tokens)
            if taken <= 0:
                return 0
            self._tokens -= taken
            return taken

    def available(self) -> int:
        with self._lock:
            self._adjust()
            return self._tokens


class NotificationLimiter:
    """Three chained buckets plus the overview cooldown for one camera.

    The buckets follow the Telegram bot guidance of at most 20 messages a
    minute to one group and roughly 1/sec with short bursts:

    - frame: 20 per minute, hard ceiling.
    - burst: 3 deep, refilled 1 per second.
    - pace: 6 per 15 seconds, so a burst does not drain the minute in ~17s.

    Buckets are consulted in order and the first denial ends the attempt.
    Tokens already taken from earlier buckets are not refunded.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self.frame = TokenBucket(60.0, 20, 20, clock=clock)
        self.burst = TokenBucket(1.0, 3, 1, clock=clock)
        self.pace = TokenBucket(15.0, 6, 6, clock=clock)
        self.last_overview_sent = clock() - OVERVIEW_COOLDOWN_SECONDS

    def try_acquire(self) -> bool:
        if self.frame.take_available(1) != 1:
            logger.debug("frame limit reached")
            return False
        if self.burst.take_available(1) != 1:
            logger.debug("burst limit reached")
            return False
        if self.pace.take_available(1) != 1:
            logger.debug("pace limit reached")
            return False
        logger.debug(
            "remaining tokens: frame=%d burst=%d pace=%d",
            self.frame.available(),
            self.burst.available(),
            self.pace.available(),
        )
        return True

    def overview_ready(self) -> bool:
        return self._clock() - self.last_overview_sent >= OVERVIEW_COOLDOWN_SECONDS

    def try_acquire_overview(self) -> bool:
        """Gate a full-frame overview on the cooldown first, then on the buckets."""
        if not self.overview_ready():
            return False
        if not self.try_acquire():
            return False
        self.last_overview_sent = self._clock()
        return True

    def tokens_remaining(self) -> str:
        return (
            f"frame: {self.frame.available()}\n"
            f"burst: {self.burst.available()}\n"
            f"pace: {self.pace.available()}\n"
            f"overview: {self._clock() - self.last_overview_sent:.1f}s ago\n"
        )
