"""Group qualifying detections with matching voice signatures into one alert."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from speakersift.config import AlertConfig
from speakersift.storage.models import SpeakerDetection


@dataclass
class AlertBatch:
    key: str  # speaker id of the first member
    members: list[SpeakerDetection] = field(default_factory=list)

    @property
    def first_detected_at(self) -> datetime:
        return self.members[0].detected_at

    @property
    def speaker_ids(self) -> list[str]:
        return [m.speaker_id for m in self.members]

    @property
    def representative(self) -> SpeakerDetection:
        return self.members[0]

    def is_open(self, now: datetime, window_ms: float) -> bool:
        return now - self.first_detected_at <= timedelta(milliseconds=window_ms)

    def accepts(self, detection: SpeakerDetection) -> bool:
        return any(m.signature.matches(detection.signature) for m in self.members)


def batch_detections(
    detections: list[SpeakerDetection], config: AlertConfig, now: datetime
) -> list[AlertBatch]:
    """Assign each detection to the first open, similar batch in creation order.

    With batching disabled every detection becomes its own batch. The result
    depends only on the input order, the config and ``now``.
    """
    if not config.batch_similar_alerts:
        return [AlertBatch(key=d.speaker_id, members=[d]) for d in detections]

    batches: list[AlertBatch] = []
    for detection in detections:
        for batch in batches:
            if batch.is_open(now, config.batch_time_window) and batch.accepts(detection):
                batch.members.append(detection)
                break
        else:
            batches.append(AlertBatch(key=detection.speaker_id, members=[detection]))
    return batches
