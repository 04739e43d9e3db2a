"""Sliding-window request limiter keyed by client address.

The limiter tracks timestamps of recent requests per key in a deque. When a
new request arrives:
    1. Remove timestamps older than (now - window)
    2. If remaining events >= max_requests, deny with the time until the
       oldest event leaves the window
    3. Otherwise, record the new timestamp and allow

The limiter is a pure boundary guard: it knows nothing about identity and is
consulted before any other component runs.
"""
from __future__ import annotations

import collections
from collections.abc import Callable
from dataclasses import dataclass
import threading
import time

from zenchat.config import Settings
from zenchat.errors import RateLimitExceededError

# Type alias for injectable time functions (used in testing)
TimeFn = Callable[[], float]


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: float = 0.0

    @classmethod
    def allow(cls) -> "RateLimitDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, retry_after: float) -> "RateLimitDecision":
        return cls(allowed=False, retry_after=max(0.0, retry_after))


class RateLimiter:
    """Track requests per client key over a rolling window.

    Setting ``max_requests=0`` or ``window_seconds=0`` disables the limiter.
    ``check`` is safe to call from the event loop and from threadpool workers.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window_seconds: float,
        now_fn: TimeFn | None = None,
    ) -> None:
        self.max_requests = max(0, int(max_requests))
        self.window_seconds = max(0.0, float(window_seconds))
        self._now = now_fn or time.monotonic
        self._events: dict[str, collections.deque[float]] = {}
        self._lock = threading.Lock()
        self._enabled = self.max_requests > 0 and self.window_seconds > 0

    @classmethod
    def from_settings(cls, settings: Settings, now_fn: TimeFn | None = None) -> "RateLimiter":
        return cls(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_ms / 1000,
            now_fn=now_fn,
        )

    def check(self, client_key: str) -> RateLimitDecision:
        """Record a request for ``client_key`` unless its window is saturated."""
        if not self._enabled:
            return RateLimitDecision.allow()

        with self._lock:
            now = self._now()
            cutoff = now - self.window_seconds
            events = self._events.setdefault(client_key, collections.deque())

            # Remove expired events from the front of the deque
            while events and events[0] <= cutoff:
                events.popleft()

            if len(events) >= self.max_requests:
                return RateLimitDecision.deny((events[0] + self.window_seconds) - now)

            events.append(now)
            return RateLimitDecision.allow()

    def enforce(self, client_key: str) -> None:
        """Like ``check`` but raises ``RateLimitExceededError`` on denial."""
        decision = self.check(client_key)
        if not decision.allowed:
            raise RateLimitExceededError(
                retry_after=decision.retry_after,
                limit=self.max_requests,
                window_seconds=self.window_seconds,
            )

    def prune(self) -> int:
        """Drop keys whose windows are empty. Returns the number removed."""
        with self._lock:
            cutoff = self._now() - self.window_seconds
            stale = [key for key, events in self._events.items() if not events or events[-1] <= cutoff]
            for key in stale:
                del self._events[key]
            return len(stale)

    def tracked_keys(self) -> int:
        return len(self._events)


__all__ = ["RateLimitDecision", "RateLimiter"]
