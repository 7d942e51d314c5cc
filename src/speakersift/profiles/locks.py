"""Per-profile critical sections."""

from __future__ import annotations

import threading
from contextlib import contextmanager


class KeyedLocks:
    """One lock per voice id. ``hold`` takes several ids in sorted order to avoid deadlock."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, *keys: str):
        locks = [self._lock_for(k) for k in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
