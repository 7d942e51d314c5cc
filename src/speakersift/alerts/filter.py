"""Decide which unidentified speakers currently qualify for an alert."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional

from speakersift.config import AlertConfig
from speakersift.storage.models import SpeakerDetection


@dataclass
class AlertMemory:
    """Prior user responses, keyed by speaker id.

    ``dismissed_until`` maps to None for a dismissal that lasts until restart.
    """

    dismissed_until: dict[str, Optional[datetime]] = field(default_factory=dict)
    deferred_until: dict[str, datetime] = field(default_factory=dict)
    last_alert_at: dict[str, datetime] = field(default_factory=dict)

    def is_dismissed(self, speaker_id: str, now: datetime) -> bool:
        if speaker_id not in self.dismissed_until:
            return False
        until = self.dismissed_until[speaker_id]
        return until is None or now < until

    def is_deferred(self, speaker_id: str, now: datetime) -> bool:
        until = self.deferred_until.get(speaker_id)
        return until is not None and now < until

    def is_suppressed(self, speaker_id: str, now: datetime, config: AlertConfig) -> bool:
        if not config.suppress_repeated_alerts:
            return False
        last = self.last_alert_at.get(speaker_id)
        if last is None:
            return False
        return now - last < timedelta(milliseconds=config.suppression_duration)

    def prune(self, now: datetime):
        """Forget expired time-boxed dismissals and deferrals."""
        for speaker_id, until in list(self.dismissed_until.items()):
            if until is not None and now >= until:
                del self.dismissed_until[speaker_id]
        for speaker_id, until in list(self.deferred_until.items()):
            if now >= until:
                del self.deferred_until[speaker_id]


def meets_thresholds(detection: SpeakerDetection, config: AlertConfig) -> bool:
    return (
        detection.duration >= config.minimum_duration
        and detection.confidence >= config.minimum_confidence
        and detection.message_count >= config.minimum_messages
    )


def filter_detections(
    detections: Iterable[SpeakerDetection],
    memory: AlertMemory,
    config: AlertConfig,
    now: datetime,
) -> list[SpeakerDetection]:
    """Return the detections that qualify for an alert, in input order."""
    return [
        d for d in detections
        if meets_thresholds(d, config)
        and not memory.is_dismissed(d.speaker_id, now)
        and not memory.is_deferred(d.speaker_id, now)
        and not memory.is_suppressed(d.speaker_id, now, config)
    ]
