"""Data models for SpeakerSift."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

PITCH_BANDS = ("low", "medium", "high")
PACE_BANDS = ("slow", "normal", "fast")

ACTIONS = ("identified", "skipped", "deferred")
METHODS = ("manual", "suggested", "matched")
RESOLUTIONS = ("primary", "secondary", "custom")


@dataclass(frozen=True)
class VoiceSignature:
    pitch: str = "medium"  # low | medium | high
    pace: str = "normal"  # slow | normal | fast

    def matches(self, other: VoiceSignature) -> bool:
        return self.pitch == other.pitch and self.pace == other.pace


@dataclass(frozen=True)
class SpeakerActivity:
    """One live activity update from the diarization collaborator."""

    speaker_id: str
    voice_id: str
    confidence: float
    speaking_duration: float
    last_speak_time: datetime
    volume: float = 0.0
    is_identified: bool = False
    signature: VoiceSignature = field(default_factory=VoiceSignature)
    context_clues: tuple[str, ...] = ()


@dataclass(frozen=True)
class SpeakerDetection:
    speaker_id: str
    voice_id: str
    confidence: float
    duration: float  # seconds of speech
    message_count: int
    detected_at: datetime
    last_active_at: datetime
    signature: VoiceSignature = field(default_factory=VoiceSignature)
    context_clues: tuple[str, ...] = ()
    audio_level: float = 0.0


@dataclass
class AudioSample:
    url: str
    transcript: str
    quality: float
    duration: float
    timestamp: datetime


@dataclass
class IdentificationRecord:
    method: str
    timestamp: datetime
    meeting_id: str
    confidence: float
    details: str = ""


@dataclass
class SpeakerProfile:
    voice_id: str
    user_id: Optional[str] = None
    display_name: Optional[str] = None
    confirmed: bool = False
    confidence: float = 0.0
    first_heard: Optional[datetime] = None
    last_heard: Optional[datetime] = None
    meetings_count: int = 0
    total_speaking_time: float = 0.0
    audio_samples: list[AudioSample] = field(default_factory=list)
    identification_history: list[IdentificationRecord] = field(default_factory=list)
    merged_into: Optional[str] = None

    def copy(self) -> SpeakerProfile:
        return replace(
            self,
            audio_samples=[replace(s) for s in self.audio_samples],
            identification_history=[replace(r) for r in self.identification_history],
        )


@dataclass
class SampleTranscript:
    text: str
    start_time: float = 0.0
    end_time: float = 0.0


@dataclass
class IdentificationRequest:
    """A detected voice awaiting a human decision (NeedsIdentification)."""

    id: str
    meeting_id: str
    meeting_title: str
    meeting_date: datetime
    voice_id: str
    speaker_label: str
    sample_transcripts: list[SampleTranscript] = field(default_factory=list)
    audio_url: str = ""
    status: str = "pending"
    resolved_user_id: Optional[str] = None
    resolved_user_name: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class MatchSuggestion:
    user_id: str
    user_name: str
    confidence: float
    reason: str = "Voice pattern similarity"


@dataclass(frozen=True)
class IdentificationResult:
    request_id: str
    action: str  # identified | skipped | deferred
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    confidence: float = 0.0
    method: Optional[str] = None  # manual | suggested | matched


@dataclass
class MergeConflict:
    field: str
    primary_value: Any
    secondary_value: Any
    resolution: Optional[str] = "primary"  # primary | secondary | custom, None = unresolved
    custom_value: Any = None

    def resolved_value(self) -> Any:
        if self.resolution == "secondary":
            return self.secondary_value
        if self.resolution == "custom":
            return self.custom_value
        return self.primary_value


@dataclass
class DuplicateCandidate:
    id: str
    profiles: list[SpeakerProfile]
    similarity_score: float
    confidence: str  # high | medium | low
    reasons: list[str] = field(default_factory=list)
    auto_mergeable: bool = False
    conflicts: list[MergeConflict] = field(default_factory=list)

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)


@dataclass
class HistoryEntry:
    """One ledger row. ``kind`` is "identification" or "merge"."""

    id: str
    timestamp: datetime
    action: str  # identified | skipped | deferred | merged | undone
    kind: str = "identification"
    request_id: Optional[str] = None
    speaker_label: str = ""
    meeting_title: str = ""
    meeting_date: Optional[datetime] = None
    method: Optional[str] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    confidence: float = 0.0
    undoable: bool = False
    source_profile_ids: list[str] = field(default_factory=list)
    result_profile_id: Optional[str] = None
    conflict_count: int = 0
    snapshot: list[SpeakerProfile] = field(default_factory=list)  # profiles before a merge
    merged_profile: Optional[SpeakerProfile] = None  # profile produced by a merge
