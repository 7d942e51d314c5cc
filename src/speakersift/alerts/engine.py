"""Unknown-speaker alerting: tracker -> filter -> batcher -> scheduler."""

from __future__ import annotations

import logging
from datetime import datetime

from speakersift.alerts.batcher import AlertBatch, batch_detections
from speakersift.alerts.filter import filter_detections
from speakersift.alerts.scheduler import AlertScheduler
from speakersift.alerts.tracker import DetectionTracker
from speakersift.config import AlertConfig
from speakersift.storage.models import SpeakerActivity

log = logging.getLogger(__name__)


class AlertEngine:
    """Single-threaded alert pipeline. Every method takes the current time."""

    def __init__(self, config: AlertConfig | None = None, enabled: bool = True):
        self.config = config or AlertConfig()
        self.enabled = enabled
        self.tracker = DetectionTracker()
        self.scheduler = AlertScheduler(self.config)

    def ingest(self, activity: SpeakerActivity, now: datetime) -> list[AlertBatch]:
        """Record one activity update and return the batches that currently qualify."""
        self.tracker.update(activity)
        return self.refresh(now)

    def refresh(self, now: datetime) -> list[AlertBatch]:
        if not self.enabled:
            self.scheduler.sync([], now)
            return []
        self.scheduler.memory.prune(now)
        qualifying = filter_detections(
            self.tracker.detections, self.scheduler.memory, self.config, now
        )
        batches = batch_detections(qualifying, self.config, now)
        self.scheduler.sync(batches, now)
        return batches

    def tick(self, now: datetime) -> list[AlertBatch]:
        """Advance the clock: fire due timers and pick up expired dismissals."""
        self.scheduler.tick(now)
        return self.refresh(now)

    def dismiss(self, key: str, duration_ms: float = 0, now: datetime | None = None) -> bool:
        return self.scheduler.dismiss(key, duration_ms, now)

    def defer(self, key: str, minutes: float, now: datetime | None = None) -> bool:
        return self.scheduler.defer(key, minutes, now)

    def identify(self, speaker_id: str, now: datetime) -> bool:
        """Stop tracking a speaker once identified and close any alert keyed by it."""
        removed = self.tracker.remove(speaker_id)
        self.scheduler.discard(speaker_id)
        if removed:
            log.info("Speaker %s identified; alert closed", speaker_id)
        self.refresh(now)
        return removed

    def visible_alerts(self) -> list[AlertBatch]:
        return self.scheduler.visible_batches()
