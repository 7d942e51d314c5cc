"""Alert presentation lifecycle.

Each batch key moves through::

    pending -> delayed -> visible -> dismissed | deferred | expired

A batch waits ``alert_delay`` ms before it becomes visible. At most
``max_simultaneous_alerts`` batches are visible at once; when a new batch
is due and the limit is reached, the oldest visible batch is evicted
(closed as dismissed, without writing any suppression for its speakers).
Visible batches optionally expire after ``auto_hide_delay`` ms.

Dismiss and defer are accepted in any phase and always cancel the key's
timers, so a late timer can never bring a closed alert back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from speakersift.alerts.batcher import AlertBatch
from speakersift.alerts.filter import AlertMemory
from speakersift.alerts.timers import TimerRegistry
from speakersift.config import AlertConfig
from speakersift.errors import UnknownBatchKey

log = logging.getLogger(__name__)

PENDING = "pending"
DELAYED = "delayed"
VISIBLE = "visible"
DISMISSED = "dismissed"
DEFERRED = "deferred"
EXPIRED = "expired"

LIVE_PHASES = (PENDING, DELAYED, VISIBLE)
CLOSED_PHASES = (DISMISSED, DEFERRED, EXPIRED)


@dataclass
class AlertRecord:
    key: str
    batch: AlertBatch
    phase: str
    created_at: datetime
    visible_since: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    evicted: bool = False


@dataclass
class AlertState:
    records: dict[str, AlertRecord] = field(default_factory=dict)
    visible: list[str] = field(default_factory=list)  # oldest first
    memory: AlertMemory = field(default_factory=AlertMemory)


class AlertScheduler:
    def __init__(
        self,
        config: AlertConfig,
        timers: TimerRegistry | None = None,
        state: AlertState | None = None,
    ):
        self.config = config
        self.timers = timers or TimerRegistry()
        self.state = state or AlertState()

    @property
    def memory(self) -> AlertMemory:
        return self.state.memory

    # ── Queries ────────────────────────────────────────────────────

    def phase(self, key: str) -> str | None:
        record = self.state.records.get(key)
        return record.phase if record else None

    def require(self, key: str) -> AlertRecord:
        try:
            return self.state.records[key]
        except KeyError:
            raise UnknownBatchKey(key) from None

    def visible_batches(self) -> list[AlertBatch]:
        return [self.state.records[k].batch for k in self.state.visible]

    # ── Events ─────────────────────────────────────────────────────

    def sync(self, batches: list[AlertBatch], now: datetime):
        """Reconcile records with the current batches, then run due timers."""
        present = {b.key for b in batches}

        for key, record in list(self.state.records.items()):
            if key in present:
                continue
            if record.phase in LIVE_PHASES:
                log.debug("Alert %s superseded in phase %s", key, record.phase)
                self._cancel_timers(key)
                self._hide(key)
            del self.state.records[key]

        for batch in batches:
            record = self.state.records.get(batch.key)
            if record is None:
                if self._already_claimed(batch):
                    continue
                self._open(batch, now)
            elif record.phase in (PENDING, DELAYED):
                record.batch = batch

        self.timers.fire_due(now)

    def tick(self, now: datetime):
        self.memory.prune(now)
        self.timers.fire_due(now)

    def dismiss(self, key: str, duration_ms: float = 0, now: datetime | None = None) -> bool:
        """Close an alert. ``duration_ms`` 0 keeps its speakers dismissed until restart."""
        now = now or datetime.now()
        record = self.state.records.get(key)
        if record is None:
            log.debug("Ignoring dismiss for unknown alert %s", key)
            return False

        until = None if duration_ms <= 0 else now + timedelta(milliseconds=duration_ms)
        for speaker_id in record.batch.speaker_ids:
            self.memory.dismissed_until[speaker_id] = until
            if self.config.suppress_repeated_alerts:
                self.memory.last_alert_at[speaker_id] = now

        self._close(record, DISMISSED, now)
        log.info("Dismissed alert %s (%s)", key, "until restart" if until is None else f"until {until}")
        return True

    def defer(self, key: str, minutes: float, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        record = self.state.records.get(key)
        if record is None:
            log.debug("Ignoring defer for unknown alert %s", key)
            return False

        until = now + timedelta(minutes=minutes)
        for speaker_id in record.batch.speaker_ids:
            self.memory.deferred_until[speaker_id] = until

        self._close(record, DEFERRED, now)
        log.info("Deferred alert %s for %s min", key, minutes)
        return True

    def discard(self, key: str) -> bool:
        """Drop an alert outright, e.g. once its speaker has been identified."""
        if key not in self.state.records:
            return False
        self._cancel_timers(key)
        self._hide(key)
        del self.state.records[key]
        return True

    # ── Transitions ────────────────────────────────────────────────

    def _open(self, batch: AlertBatch, now: datetime):
        record = AlertRecord(key=batch.key, batch=batch, phase=PENDING, created_at=now)
        self.state.records[batch.key] = record
        self.timers.schedule(f"delay:{batch.key}", self.config.alert_delay, self._make_visible(batch.key), now)
        record.phase = DELAYED

    def _make_visible(self, key: str):
        def fire(now: datetime):
            record = self.state.records.get(key)
            if record is None or record.phase not in (PENDING, DELAYED):
                return
            while len(self.state.visible) >= self.config.max_simultaneous_alerts:
                oldest = self.state.records[self.state.visible[0]]
                oldest.evicted = True
                self._close(oldest, DISMISSED, now)
                log.info("Evicted alert %s to make room for %s", oldest.key, key)
            record.phase = VISIBLE
            record.visible_since = now
            self.state.visible.append(key)
            log.info("Alert %s visible (%d speaker(s))", key, len(record.batch.members))
            if self.config.auto_hide_delay > 0:
                self.timers.schedule(f"hide:{key}", self.config.auto_hide_delay, self._expire(key), now)
        return fire

    def _expire(self, key: str):
        def fire(now: datetime):
            record = self.state.records.get(key)
            if record is None or record.phase != VISIBLE:
                return
            self._close(record, EXPIRED, now)
            log.info("Alert %s expired", key)
        return fire

    def _close(self, record: AlertRecord, phase: str, now: datetime):
        self._cancel_timers(record.key)
        self._hide(record.key)
        record.phase = phase
        record.closed_at = now

    def _hide(self, key: str):
        if key in self.state.visible:
            self.state.visible.remove(key)

    def _cancel_timers(self, key: str):
        self.timers.cancel(f"delay:{key}")
        self.timers.cancel(f"hide:{key}")

    def _already_claimed(self, batch: AlertBatch) -> bool:
        """True when every member already belongs to another tracked alert."""
        claimed = set()
        for record in self.state.records.values():
            claimed.update(record.batch.speaker_ids)
        return all(s in claimed for s in batch.speaker_ids)
