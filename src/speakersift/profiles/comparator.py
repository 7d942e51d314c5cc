"""Score speaker profiles for likely duplication and flag field conflicts."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Protocol

from speakersift.config import ThresholdConfig
from speakersift.errors import ValidationError
from speakersift.storage.models import DuplicateCandidate, MergeConflict, SpeakerProfile

# Fields compared for conflicts, in report order
CONFLICT_FIELDS = ("user_id", "display_name")


class SimilarityScorer(Protocol):
    """Anything that scores how likely two profiles are the same voice, in [0, 1]."""

    def score(self, a: SpeakerProfile, b: SpeakerProfile) -> tuple[float, list[str]]:
        ...


class RuleBasedScorer:
    """Metadata heuristics standing in for acoustic similarity.

    Starts from the weaker of the two profile confidences and adds evidence
    for a linked user, similar names, and overlapping activity periods.
    """

    def score(self, a: SpeakerProfile, b: SpeakerProfile) -> tuple[float, list[str]]:
        reasons = []
        score = min(a.confidence, b.confidence) * 0.6

        if a.user_id and a.user_id == b.user_id:
            score += 0.3
            reasons.append("Same linked user")

        if a.display_name and b.display_name:
            ratio = name_similarity(a.display_name, b.display_name)
            if ratio >= 0.5:
                score += 0.25 * ratio
                reasons.append("Name similarity")

        if _periods_overlap(a, b):
            score += 0.1
            reasons.append("Meeting pattern overlap")

        if min(a.confidence, b.confidence) >= 0.7:
            reasons.append("Similar voice characteristics")

        return round(min(score, 1.0), 4), reasons


@dataclass
class ComparisonResult:
    overall_score: float
    confidence: str
    recommendation: str  # accept | uncertain | reject
    factors: list[str] = field(default_factory=list)


def name_similarity(a: str, b: str) -> float:
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return 0.0
    # "John D." vs "John Doe": shared first token counts as a strong hint
    if a.split()[0] == b.split()[0]:
        return max(0.8, SequenceMatcher(None, a, b).ratio())
    return SequenceMatcher(None, a, b).ratio()


def _periods_overlap(a: SpeakerProfile, b: SpeakerProfile) -> bool:
    if not (a.first_heard and a.last_heard and b.first_heard and b.last_heard):
        return False
    return a.first_heard <= b.last_heard and b.first_heard <= a.last_heard


def confidence_tier(score: float, thresholds: ThresholdConfig | None = None) -> str:
    thresholds = thresholds or ThresholdConfig()
    if score >= thresholds.high_confidence:
        return "high"
    if score >= thresholds.medium_confidence:
        return "medium"
    return "low"


def detect_conflicts(primary: SpeakerProfile, secondary: SpeakerProfile) -> list[MergeConflict]:
    """Fields where both profiles hold different non-null values.

    ``confirmed`` never conflicts: a merge keeps it true if either side is.
    """
    conflicts = []
    for name in CONFLICT_FIELDS:
        p, s = getattr(primary, name), getattr(secondary, name)
        if p is not None and s is not None and p != s:
            conflicts.append(MergeConflict(field=name, primary_value=p, secondary_value=s))
    return conflicts


def compare_profiles(
    profiles: list[SpeakerProfile],
    scorer: SimilarityScorer | None = None,
    thresholds: ThresholdConfig | None = None,
    candidate_id: str | None = None,
) -> DuplicateCandidate:
    """Build a duplicate candidate for a primary profile and one or more others.

    For groups the score is the weakest primary-to-other score and the
    conflicts are collected against the primary.
    """
    if len(profiles) < 2:
        raise ValidationError("Need at least two profiles to compare")
    scorer = scorer or RuleBasedScorer()
    thresholds = thresholds or ThresholdConfig()

    primary, others = profiles[0], profiles[1:]
    scores = []
    reasons: list[str] = []
    conflicts: list[MergeConflict] = []
    for other in others:
        score, why = scorer.score(primary, other)
        scores.append(score)
        reasons.extend(r for r in why if r not in reasons)
        conflicts.extend(detect_conflicts(primary, other))

    similarity = min(scores)
    return DuplicateCandidate(
        id=candidate_id or "+".join(p.voice_id for p in profiles),
        profiles=list(profiles),
        similarity_score=similarity,
        confidence=confidence_tier(similarity, thresholds),
        reasons=reasons,
        auto_mergeable=similarity >= thresholds.merge_threshold and not conflicts,
        conflicts=conflicts,
    )


def analyze_candidate(
    candidate: DuplicateCandidate, thresholds: ThresholdConfig | None = None
) -> ComparisonResult:
    thresholds = thresholds or ThresholdConfig()
    score = candidate.similarity_score
    if score > thresholds.high_confidence:
        recommendation = "accept"
    elif score > thresholds.medium_confidence:
        recommendation = "uncertain"
    else:
        recommendation = "reject"

    factors = list(candidate.reasons)
    factors.append(
        "High confidence match" if score > thresholds.high_confidence
        else "Moderate similarity detected"
    )
    if candidate.conflicts:
        fields = ", ".join(c.field for c in candidate.conflicts)
        factors.append(f"Conflicting fields: {fields}")
    return ComparisonResult(
        overall_score=score,
        confidence=candidate.confidence,
        recommendation=recommendation,
        factors=factors,
    )


def _primary_first(a: SpeakerProfile, b: SpeakerProfile) -> tuple[SpeakerProfile, SpeakerProfile]:
    """Confirmed profile first, then the one heard earliest, then by id."""
    def rank(p: SpeakerProfile):
        return (not p.confirmed, p.first_heard is None, p.first_heard or 0, p.voice_id)
    return (a, b) if rank(a) <= rank(b) else (b, a)


def scan_for_duplicates(
    profiles: list[SpeakerProfile],
    scorer: SimilarityScorer | None = None,
    thresholds: ThresholdConfig | None = None,
) -> list[DuplicateCandidate]:
    """Compare every pair once and keep those at or above the scan floor, best first."""
    scorer = scorer or RuleBasedScorer()
    thresholds = thresholds or ThresholdConfig()
    ordered = sorted(profiles, key=lambda p: p.voice_id)

    candidates = []
    for a, b in itertools.combinations(ordered, 2):
        primary, secondary = _primary_first(a, b)
        candidate = compare_profiles([primary, secondary], scorer, thresholds)
        if candidate.similarity_score >= thresholds.duplicate_scan_floor:
            candidates.append(candidate)

    candidates.sort(key=lambda c: (-c.similarity_score, c.id))
    return candidates


def filter_candidates(
    candidates: list[DuplicateCandidate],
    search: str = "",
    tier: str = "all",
    auto_mergeable_only: bool = False,
) -> list[DuplicateCandidate]:
    result = candidates
    if search:
        needle = search.lower()
        result = [
            c for c in result
            if any(
                needle in (p.display_name or "").lower() or needle in p.voice_id.lower()
                for p in c.profiles
            )
        ]
    if tier != "all":
        result = [c for c in result if c.confidence == tier]
    if auto_mergeable_only:
        result = [c for c in result if c.auto_mergeable]
    return result
