"""Per-IP fixed-window request counter."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

WINDOW_SECONDS = 60 * 60
CLEANUP_INTERVAL_SECONDS = 10 * 60

CHECKOUT_LIMIT = 10
PROMO_VERIFY_LIMIT = 20
CONTACT_LIMIT = 5


@dataclass
class RateDecision:
    allowed: bool
    ip: str


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._last_cleanup = clock()
        self._lock = threading.Lock()

    def check(self, scope: str, ip: str, max_requests: int, window_seconds: int = WINDOW_SECONDS) -> RateDecision:
        """Count one request for ``(scope, ip)``; requests without an IP always pass."""
        if not ip:
            return RateDecision(allowed=True, ip="")
        key = (scope, ip)
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + window_seconds)
                self._cleanup(now)
                return RateDecision(allowed=True, ip=ip)
            window.count += 1
            return RateDecision(allowed=window.count <= max_requests, ip=ip)

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        stale = [k for k, w in self._windows.items() if w.reset_at < now]
        for key in stale:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)
