"""Signed session cookie for the internal dashboard."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Callable, Optional

COOKIE_NAME = "dashboard_session"
MAX_AGE_SECONDS = 7 * 24 * 60 * 60


class DashboardAuth:
    """Issues and verifies ``<timestamp_ms>.<hex hmac>`` cookies."""

    def __init__(self, secret: Optional[str], clock: Callable[[], float] = time.time) -> None:
        self._secret = (secret or "").strip() or None
        self._clock = clock

    @property
    def is_configured(self) -> bool:
        return self._secret is not None

    def check_secret(self, candidate: str) -> bool:
        if not self._secret or not candidate:
            return False
        return hmac.compare_digest(candidate.strip().encode(), self._secret.encode())

    def _sign(self, timestamp: str) -> str:
        return hmac.new(self._secret.encode(), f"dashboard-{timestamp}".encode(), hashlib.sha256).hexdigest()

    def issue(self) -> str:
        if not self._secret:
            raise RuntimeError("DASHBOARD_SECRET is not set")
        timestamp = str(int(self._clock() * 1000))
        return f"{timestamp}.{self._sign(timestamp)}"

    def verify(self, value: Optional[str]) -> bool:
        if not self._secret or not value:
            return False
        timestamp, _, signature = value.partition(".")
        if not timestamp or not signature:
            return False
        if not hmac.compare_digest(signature.lower().encode(), self._sign(timestamp).encode()):
            return False
        try:
            issued_ms = int(timestamp)
        except ValueError:
            return False
        return issued_ms >= (self._clock() - MAX_AGE_SECONDS) * 1000
