"""Append-only decision ledger with undo/redo."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from speakersift.errors import UnknownBatchKey
from speakersift.history.filters import HistoryFilters, apply_filters
from speakersift.history.stats import HistoryStats, compute_stats
from speakersift.storage.models import HistoryEntry
from speakersift.storage.repository import ProfileStore

log = logging.getLogger(__name__)


class HistoryLedger:
    """Ordered history entries plus undo and redo stacks.

    Entries are never removed. Undo swaps an entry for an ``undone`` copy and
    keeps the original on the undo stack; redo puts that original back.
    When a store is given, every change is written through to it.
    """

    def __init__(self, store: ProfileStore | None = None, entries: list[HistoryEntry] | None = None):
        self.store = store
        self._entries: list[HistoryEntry] = list(entries or [])
        self.undo_stack: list[HistoryEntry] = []
        self.redo_stack: list[HistoryEntry] = []

    @classmethod
    def load(cls, store: ProfileStore) -> HistoryLedger:
        ledger = cls(store, store.list_history_entries())
        ledger.undo_stack = store.list_undone()
        return ledger

    @property
    def entries(self) -> list[HistoryEntry]:
        return list(self._entries)

    def get(self, entry_id: str) -> HistoryEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def require(self, entry_id: str) -> HistoryEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise UnknownBatchKey(entry_id)
        return entry

    def record(self, entry: HistoryEntry) -> HistoryEntry:
        """Append an entry. A merge entry also writes its merged profile through to the store."""
        if self.store is not None:
            if entry.kind == "merge" and entry.merged_profile is not None:
                _, secondary_id = entry.source_profile_ids
                self.store.record_merge(entry.merged_profile.copy(), secondary_id, entry)
            else:
                self.store.insert_history_entry(entry)
        self._entries.append(entry)
        log.debug("Recorded %s entry %s (%s)", entry.kind, entry.id, entry.action)
        return entry

    def undo(self, entry_id: str, now: datetime | None = None) -> HistoryEntry | None:
        """Mark an undoable entry as undone. Unknown or non-undoable ids are a no-op.

        A merge can only be undone once every later merge touching the same
        profiles has been undone, otherwise its snapshots would overwrite
        their results.
        """
        entry = self.get(entry_id)
        if entry is None or not entry.undoable:
            log.debug("Nothing to undo for %s", entry_id)
            return None
        blocker = self._later_merge(entry)
        if blocker is not None:
            log.warning("Not undoing %s: undo later merge %s first", entry.id, blocker.id)
            return None

        undone = replace(entry, action="undone", timestamp=now or datetime.now(), undoable=False)
        if self.store is not None:
            self.store.record_undo(undone, entry)
        self._swap(entry, undone)
        self.undo_stack.append(entry)
        self.redo_stack.clear()
        log.info("Undid %s entry %s", entry.kind, entry.id)
        return entry

    def redo(self) -> HistoryEntry | None:
        """Restore the most recently undone entry exactly as it was. Empty stack is a no-op."""
        if not self.undo_stack:
            return None
        original = self.undo_stack[-1]
        blocker = self._later_merge(original)
        if blocker is not None:
            log.warning("Not redoing %s: merge %s has since changed its profiles", original.id, blocker.id)
            return None

        if self.store is not None:
            self.store.record_redo(original)
        self.undo_stack.pop()
        self._swap(original, original)
        self.redo_stack.append(original)
        log.info("Redid %s entry %s", original.kind, original.id)
        return original

    def query(
        self,
        filters: HistoryFilters | None = None,
        sort_field: str = "timestamp",
        descending: bool = True,
    ) -> list[HistoryEntry]:
        return apply_filters(self._entries, filters, sort_field, descending)

    def stats(self, now: datetime | None = None) -> HistoryStats:
        return compute_stats(self._entries, now or datetime.now())

    def _later_merge(self, entry: HistoryEntry) -> HistoryEntry | None:
        """The first applied merge recorded after ``entry`` that shares one of its profiles."""
        if entry.kind != "merge":
            return None
        ids = set(entry.source_profile_ids)
        later = False
        for other in self._entries:
            if other.id == entry.id:
                later = True
                continue
            if (
                later
                and other.kind == "merge"
                and other.action == "merged"
                and ids.intersection(other.source_profile_ids)
            ):
                return other
        return None

    def _swap(self, old: HistoryEntry, new: HistoryEntry):
        for i, entry in enumerate(self._entries):
            if entry.id == old.id:
                self._entries[i] = new
                return

    def __len__(self) -> int:
        return len(self._entries)
