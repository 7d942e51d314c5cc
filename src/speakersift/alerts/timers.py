"""Keyed, cancellable timers driven by an explicit clock.

Nothing here sleeps or spawns threads. Callers advance time by calling
``fire_due(now)`` from their event loop, and every callback runs on that
caller's thread.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

log = logging.getLogger(__name__)


@dataclass(order=True)
class TimerHandle:
    due_at: datetime
    seq: int
    key: str = field(compare=False)
    callback: Callable[[datetime], None] = field(compare=False, repr=False)
    cancelled: bool = field(default=False, compare=False)


class TimerRegistry:
    """Registry mapping key -> pending timer. At most one timer per key."""

    def __init__(self):
        self._pending: dict[str, TimerHandle] = {}
        self._seq = itertools.count()

    def schedule(
        self, key: str, delay_ms: float, callback: Callable[[datetime], None], now: datetime
    ) -> TimerHandle:
        """Schedule ``callback`` to run ``delay_ms`` after ``now``, replacing any timer on ``key``."""
        self.cancel(key)
        handle = TimerHandle(
            due_at=now + timedelta(milliseconds=delay_ms),
            seq=next(self._seq),
            key=key,
            callback=callback,
        )
        self._pending[key] = handle
        return handle

    def cancel(self, key: str) -> bool:
        handle = self._pending.pop(key, None)
        if handle is None:
            return False
        handle.cancelled = True
        log.debug("Cancelled timer %s", key)
        return True

    def fire_due(self, now: datetime) -> int:
        """Run every timer due at or before ``now`` in due order. Returns the count fired.

        Callbacks may schedule or cancel timers; newly scheduled timers that
        are already due fire in the same call.
        """
        fired = 0
        while True:
            due = [h for h in self._pending.values() if h.due_at <= now]
            if not due:
                return fired
            handle = min(due)
            del self._pending[handle.key]
            handle.callback(now)
            fired += 1

    def __len__(self) -> int:
        return len(self._pending)
