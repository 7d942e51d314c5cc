"""Apply merges to the profile store and keep them reversible."""

from __future__ import annotations

import logging
from datetime import datetime

from speakersift.config import ThresholdConfig
from speakersift.errors import ValidationError
from speakersift.history.ledger import HistoryLedger
from speakersift.profiles.comparator import (
    SimilarityScorer,
    compare_profiles,
    scan_for_duplicates,
)
from speakersift.profiles.locks import KeyedLocks
from speakersift.profiles.merge import MergeOutcome, merge_profiles
from speakersift.storage.models import DuplicateCandidate, HistoryEntry, MergeConflict
from speakersift.storage.repository import ProfileStore

log = logging.getLogger(__name__)


class MergeService:
    """Duplicate scanning and merging against a ProfileStore.

    Merges, undos and redos hold the per-voice locks of every profile they
    touch, so two operations on the same profile never interleave.
    """

    def __init__(
        self,
        store: ProfileStore,
        ledger: HistoryLedger,
        scorer: SimilarityScorer | None = None,
        thresholds: ThresholdConfig | None = None,
        locks: KeyedLocks | None = None,
    ):
        if ledger.store is not store:
            raise ValueError("MergeService needs a ledger that writes through to the same store")
        self.store = store
        self.ledger = ledger
        self.scorer = scorer
        self.thresholds = thresholds or store.thresholds
        self.locks = locks or KeyedLocks()

    def scan(self) -> list[DuplicateCandidate]:
        return scan_for_duplicates(self.store.list_profiles(), self.scorer, self.thresholds)

    def candidate_for(self, primary_id: str, secondary_id: str) -> DuplicateCandidate:
        profiles = []
        for voice_id in (primary_id, secondary_id):
            profile = self.store.get_profile(voice_id)
            if profile is None or profile.merged_into:
                raise ValidationError(f"No active profile {voice_id}")
            profiles.append(profile)
        return compare_profiles(profiles, self.scorer, self.thresholds)

    def merge(
        self,
        candidate: DuplicateCandidate,
        conflicts: list[MergeConflict] | None = None,
        now: datetime | None = None,
    ) -> MergeOutcome:
        if conflicts is None:
            conflicts = candidate.conflicts
        ids = [p.voice_id for p in candidate.profiles]
        with self.locks.hold(*ids):
            outcome = merge_profiles(candidate, conflicts, now)
            primary_id, secondary_id = outcome.entry.source_profile_ids
            self.ledger.record(outcome.entry)
        log.info(
            "Merged %s into %s (%d conflict(s))", secondary_id, primary_id, len(conflicts)
        )
        return outcome

    def auto_merge(
        self, candidates: list[DuplicateCandidate], now: datetime | None = None
    ) -> list[MergeOutcome]:
        """Merge every auto-mergeable candidate whose profiles are still active."""
        outcomes = []
        merged_away: set[str] = set()
        touched: set[str] = set()
        for candidate in candidates:
            if not candidate.auto_mergeable:
                continue
            ids = [p.voice_id for p in candidate.profiles]
            if merged_away.intersection(ids):
                log.debug("Skipping %s: a profile was already merged", candidate.id)
                continue
            if touched.intersection(ids):
                # rescore against the profile as it is after the earlier merge
                candidate = self.candidate_for(*ids)
                if not candidate.auto_mergeable:
                    continue
            outcomes.append(self.merge(candidate, [], now))
            touched.update(ids)
            merged_away.add(ids[1])
        return outcomes

    def undo(self, entry_id: str, now: datetime | None = None) -> HistoryEntry | None:
        """Undo an entry; for a merge the ledger writes both source snapshots back."""
        entry = self.ledger.get(entry_id)
        if entry is None or entry.kind != "merge":
            return self.ledger.undo(entry_id, now)
        with self.locks.hold(*entry.source_profile_ids):
            return self.ledger.undo(entry_id, now)

    def redo(self) -> HistoryEntry | None:
        """Redo the last undo; a merge entry re-applies its merged profile."""
        if not self.ledger.undo_stack:
            return None
        entry = self.ledger.undo_stack[-1]
        if entry.kind != "merge":
            return self.ledger.redo()
        with self.locks.hold(*entry.source_profile_ids):
            return self.ledger.redo()
