"""
Rate limiting module for SVerify.

Provides a sliding window counter and the admission policy built on it:
a global cap on ticket insertions plus a per-identifier debounce.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

from .config import DEBOUNCE_SECONDS, GLOBAL_INSERT_LIMIT, GLOBAL_WINDOW_SECONDS
from .store import TicketStore
from .util import Clock, now_epoch


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    Sliding window counter.

    ``check`` only inspects the window; events are counted with ``hit``.
    Thread-safe; uses deques for efficient window tracking.
    """

    def __init__(self, limit: int, window_seconds: float, clock: Optional[Clock] = None):
        """
        Initialize rate limiter.

        Args:
            limit: Maximum events per window
            window_seconds: Window size in seconds
            clock: Time source (defaults to time.time)
        """
        self._limit = max(1, limit)
        self._window = window_seconds
        self._clock = clock or now_epoch
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    def _prune(self, q: Deque[float], now: float) -> None:
        window_start = now - self._window
        while q and q[0] <= window_start:
            q.popleft()

    def check(self, key: str) -> RateLimitResult:
        """
        Check whether one more event for ``key`` fits in the window.

        Args:
            key: Identifier for rate limiting

        Returns:
            RateLimitResult with allowed status and metadata
        """
        now = self._clock()

        with self._lock:
            q = self._hits[key]
            self._prune(q, now)

            current_count = len(q)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if current_count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now)
                )

            return RateLimitResult(
                allowed=True,
                remaining=self._limit - current_count,
                reset_at=reset_at
            )

    def allow(self, key: str) -> bool:
        """True if one more event for ``key`` fits in the window."""
        return self.check(key).allowed

    def hit(self, key: str) -> None:
        """Record one event for ``key`` at the current time."""
        now = self._clock()
        with self._lock:
            q = self._hits[key]
            self._prune(q, now)
            q.append(now)

    def get_stats(self, key: str) -> Dict[str, float]:
        """
        Get current stats for a key.

        Returns:
            Dict with current count and limit
        """
        now = self._clock()

        with self._lock:
            q = self._hits[key]
            self._prune(q, now)
            count = len(q)

            return {
                "current": count,
                "limit": self._limit,
                "remaining": max(0, self._limit - count),
                "window_seconds": self._window
            }

    def reset(self, key: Optional[str] = None) -> None:
        """
        Reset rate limit counters.

        Args:
            key: Specific key to reset, or None to reset all
        """
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()


class InsertionRateLimiter:
    """
    Admission rate policy.

    Both checks are advisory and never mutate state; the orchestrator
    calls ``record_insert`` after a ticket has been persisted.
    """

    GLOBAL_KEY = "insert:global"

    def __init__(
        self,
        store: TicketStore,
        limit: int = GLOBAL_INSERT_LIMIT,
        window_seconds: float = GLOBAL_WINDOW_SECONDS,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        clock: Optional[Clock] = None
    ):
        self._store = store
        self._global = RateLimiter(limit, window_seconds, clock)
        self.debounce_seconds = debounce_seconds

    def global_status(self) -> RateLimitResult:
        return self._global.check(self.GLOBAL_KEY)

    def admit_insert(self) -> bool:
        """False once the trailing window already holds the insertion limit."""
        return self._global.allow(self.GLOBAL_KEY)

    def admit_for_identifier(self, identifier: str) -> bool:
        """False if the identifier was admitted within the debounce window."""
        return not self._store.recent_insert(identifier, self.debounce_seconds)

    def record_insert(self, identifier: str) -> None:
        self._global.hit(self.GLOBAL_KEY)

    def stats(self) -> Dict[str, float]:
        return self._global.get_stats(self.GLOBAL_KEY)

    def reset(self) -> None:
        self._global.reset()
