"""Fixed-window rate limiter over a bounded TTL map.

One instance per process, injected into whatever serves requests.  Keys are
client sessions; expired windows are swept lazily and the map never holds
more than ``max_keys`` entries.
"""

from __future__ import annotations
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from .errors import RateLimitExceeded


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: float          # seconds until the window resets


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """At most ``limit`` requests per key per ``window_seconds``."""

    def __init__(
        self,
        limit: int = 20,
        window_seconds: float = 60.0,
        *,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def check(self, key: str) -> RateLimitResult:
        """Count one request against ``key``."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window
            self._windows.move_to_end(key)
            while len(self._windows) > self.max_keys:
                self._windows.popitem(last=False)

            reset_in = window.reset_at - now
            if window.count >= self.limit:
                return RateLimitResult(allowed=False, remaining=0, reset_in=reset_in)
            window.count += 1
            return RateLimitResult(allowed=True, remaining=self.limit - window.count, reset_in=reset_in)

    def enforce(self, key: str) -> RateLimitResult:
        result = self.check(key)
        if not result.allowed:
            raise RateLimitExceeded(result.reset_in)
        return result

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        # At most once per window
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in [k for k, w in self._windows.items() if w.reset_at <= now]:
            del self._windows[key]
