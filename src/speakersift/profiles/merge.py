"""Merge a pair of duplicate profiles into one."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from speakersift.errors import ConflictsUnresolved, ValidationError
from speakersift.storage.models import (
    RESOLUTIONS,
    DuplicateCandidate,
    HistoryEntry,
    MergeConflict,
    SpeakerProfile,
)


@dataclass
class MergeOutcome:
    profile: SpeakerProfile
    entry: HistoryEntry


def resolve_all(conflicts: list[MergeConflict], resolution: str) -> list[MergeConflict]:
    """Return copies of ``conflicts`` all set to ``resolution`` ("primary" or "secondary")."""
    if resolution not in ("primary", "secondary"):
        raise ValidationError(f"Bulk resolution must be primary or secondary, got {resolution}")
    return [
        MergeConflict(c.field, c.primary_value, c.secondary_value, resolution)
        for c in conflicts
    ]


def _earliest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return min(a, b)


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None or b is None:
        return a or b
    return max(a, b)


def check_resolutions(candidate: DuplicateCandidate, conflicts: list[MergeConflict]):
    """Raise ConflictsUnresolved unless every candidate conflict has a valid resolution."""
    given = {c.field: c for c in conflicts}
    unresolved = [
        c.field for c in candidate.conflicts
        if c.field not in given or given[c.field].resolution not in RESOLUTIONS
    ]
    unresolved += [
        c.field for c in conflicts
        if c.resolution not in RESOLUTIONS and c.field not in unresolved
    ]
    if unresolved:
        raise ConflictsUnresolved(unresolved)


def merge_profiles(
    candidate: DuplicateCandidate,
    conflicts: list[MergeConflict],
    now: datetime | None = None,
) -> MergeOutcome:
    """Combine primary and secondary. The merged profile keeps the primary's id.

    Samples and identification history are concatenated primary first,
    counters are summed, and the activity window is widened to cover both.
    Fields without a conflict keep the primary's value, except ``confirmed``
    which is true if either profile is.

    The returned history entry keeps copies of both source profiles so the
    merge can be reversed.
    """
    if len(candidate.profiles) != 2:
        raise ValidationError(
            f"Merge takes exactly two profiles, candidate {candidate.id} has {len(candidate.profiles)}"
        )
    check_resolutions(candidate, conflicts)
    now = now or datetime.now()

    primary, secondary = candidate.profiles
    merged = primary.copy()
    merged.audio_samples = primary.copy().audio_samples + secondary.copy().audio_samples
    merged.identification_history = (
        primary.copy().identification_history + secondary.copy().identification_history
    )
    merged.meetings_count = primary.meetings_count + secondary.meetings_count
    merged.total_speaking_time = primary.total_speaking_time + secondary.total_speaking_time
    merged.first_heard = _earliest(primary.first_heard, secondary.first_heard)
    merged.last_heard = _latest(primary.last_heard, secondary.last_heard)
    merged.confirmed = primary.confirmed or secondary.confirmed
    merged.merged_into = None

    for conflict in conflicts:
        if conflict.field in ("voice_id", "merged_into") or not hasattr(merged, conflict.field):
            raise ValidationError(f"Cannot resolve conflict on field {conflict.field}")
        setattr(merged, conflict.field, conflict.resolved_value())

    entry = HistoryEntry(
        id=f"merge_{uuid.uuid4().hex[:12]}",
        timestamp=now,
        action="merged",
        kind="merge",
        speaker_label=merged.display_name or merged.voice_id,
        user_id=merged.user_id,
        user_name=merged.display_name,
        confidence=candidate.similarity_score,
        undoable=True,
        source_profile_ids=[primary.voice_id, secondary.voice_id],
        result_profile_id=merged.voice_id,
        conflict_count=len(conflicts),
        snapshot=[primary.copy(), secondary.copy()],
        merged_profile=merged.copy(),
    )
    return MergeOutcome(profile=merged, entry=entry)
