import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
    """One ``threading.Lock`` per key, created on first use.

    Locks are never evicted; keys are order numbers and idempotency tokens,
    which stay few per process lifetime.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
