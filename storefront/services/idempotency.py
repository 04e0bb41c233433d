"""In-process idempotency cache for checkout submissions."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

DEFAULT_TTL_SECONDS = 24 * 60 * 60
HEADER_NAME = "Idempotency-Key"


@dataclass(frozen=True)
class CachedResult:
    order_number: str
    order_id: Optional[str] = None
    redirect_url: Optional[str] = None
    created_at: float = 0.0


def resolve_key(headers: Mapping[str, str], body: Optional[Mapping] = None) -> Optional[str]:
    """Header first, then ``idempotencyKey`` in the body; None disables dedup."""
    header = (headers.get(HEADER_NAME) or "").strip()
    if header:
        return header
    value = (body or {}).get("idempotencyKey")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class IdempotencyCache:
    """Key -> prior checkout result, expired lazily on every read.

    Non-durable: a restart forgets every key. Swap in a shared store with the
    same methods when running more than one process.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CachedResult] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [k for k, v in self._entries.items() if now - v.created_at > self._ttl]
        for key in expired:
            del self._entries[key]

    def get(self, key: str) -> Optional[CachedResult]:
        with self._lock:
            self._prune(self._clock())
            return self._entries.get(key)

    def get_order(self, key: str) -> Optional[CachedResult]:
        entry = self.get(key)
        return entry if entry and entry.order_id else None

    def get_redirect(self, key: str) -> Optional[CachedResult]:
        entry = self.get(key)
        return entry if entry and entry.redirect_url else None

    def set_order(self, key: str, order_number: str, order_id: str) -> None:
        self._set(key, CachedResult(order_number=order_number, order_id=order_id))

    def set_redirect(self, key: str, order_number: str, redirect_url: str) -> None:
        self._set(key, CachedResult(order_number=order_number, redirect_url=redirect_url))

    def _set(self, key: str, result: CachedResult) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._entries[key] = CachedResult(
                order_number=result.order_number,
                order_id=result.order_id,
                redirect_url=result.redirect_url,
                created_at=now,
            )

    def __len__(self) -> int:
        return len(self._entries)
