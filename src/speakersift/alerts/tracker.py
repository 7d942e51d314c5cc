"""Fold live speaker-activity updates into current detections."""

from __future__ import annotations

from speakersift.storage.models import SpeakerActivity, SpeakerDetection


class DetectionTracker:
    """Latest detection per unidentified speaker, in first-seen order.

    Each update supersedes the speaker's previous detection: the original
    ``detected_at`` is kept and ``message_count`` grows by one.
    """

    def __init__(self):
        self._detections: dict[str, SpeakerDetection] = {}

    def update(self, activity: SpeakerActivity) -> SpeakerDetection | None:
        if activity.is_identified:
            return None

        previous = self._detections.get(activity.speaker_id)
        detection = SpeakerDetection(
            speaker_id=activity.speaker_id,
            voice_id=activity.voice_id,
            confidence=activity.confidence,
            duration=activity.speaking_duration,
            message_count=previous.message_count + 1 if previous else 1,
            detected_at=previous.detected_at if previous else activity.last_speak_time,
            last_active_at=activity.last_speak_time,
            signature=activity.signature,
            context_clues=activity.context_clues,
            audio_level=activity.volume,
        )
        self._detections[activity.speaker_id] = detection
        return detection

    def remove(self, speaker_id: str) -> bool:
        return self._detections.pop(speaker_id, None) is not None

    def clear(self):
        self._detections.clear()

    def get(self, speaker_id: str) -> SpeakerDetection | None:
        return self._detections.get(speaker_id)

    @property
    def detections(self) -> list[SpeakerDetection]:
        return list(self._detections.values())

    def __len__(self) -> int:
        return len(self._detections)
