"""Tests for speakersift.history: ledger, filters and stats."""

from __future__ import annotations

from datetime import timedelta

import pytest

from speakersift.errors import UnknownBatchKey
from speakersift.history.filters import HistoryFilters, apply_filters
from speakersift.history.ledger import HistoryLedger
from speakersift.history.stats import compute_stats
from speakersift.storage.models import HistoryEntry

from conftest import NOW


def entry(entry_id, action="identified", days_ago=0, method="manual", confidence=0.8,
          speaker="Speaker 1", meeting="Weekly Planning", user="Ann", kind="identification"):
    return HistoryEntry(
        id=entry_id,
        timestamp=NOW - timedelta(days=days_ago),
        action=action,
        kind=kind,
        speaker_label=speaker,
        meeting_title=meeting,
        method=method if action == "identified" else None,
        user_name=user if action == "identified" else None,
        confidence=confidence if action == "identified" else 0.0,
        undoable=action == "identified",
    )


class TestLedger:
    def test_undo_then_redo_restores_entry(self, ledger):
        original = ledger.record(entry("h1"))
        ledger.undo("h1", NOW + timedelta(minutes=1))

        undone = ledger.get("h1")
        assert undone.action == "undone"
        assert undone.undoable is False
        assert undone.timestamp == NOW + timedelta(minutes=1)

        assert ledger.redo() == original
        assert ledger.get("h1") == original
        assert len(ledger) == 1

    def test_undo_unknown_or_not_undoable_is_noop(self, ledger):
        ledger.record(entry("h1", action="skipped"))
        assert ledger.undo("h1") is None
        assert ledger.undo("ghost") is None
        assert ledger.get("h1").action == "skipped"

    def test_redo_empty_stack_is_noop(self, ledger):
        assert ledger.redo() is None

    def test_undo_clears_redo_stack(self, ledger):
        ledger.record(entry("h1"))
        ledger.record(entry("h2"))
        ledger.undo("h1")
        ledger.redo()
        assert ledger.redo_stack
        ledger.undo("h2")
        assert ledger.redo_stack == []

    def test_require_unknown_raises(self, ledger):
        with pytest.raises(UnknownBatchKey):
            ledger.require("ghost")

    def test_changes_persist_across_loads(self, store, ledger):
        ledger.record(entry("h1"))
        ledger.record(entry("h2"))
        ledger.undo("h2", NOW)

        reloaded = HistoryLedger.load(store)
        assert [e.action for e in reloaded.entries] == ["identified", "undone"]
        assert [e.id for e in reloaded.undo_stack] == ["h2"]

        restored = reloaded.redo()
        assert restored.action == "identified"
        assert HistoryLedger.load(store).get("h2").action == "identified"
        assert HistoryLedger.load(store).undo_stack == []

    def test_query_and_stats_delegate(self, ledger):
        ledger.record(entry("h1"))
        ledger.record(entry("h2", action="skipped"))
        assert [e.id for e in ledger.query(HistoryFilters(action="skipped"))] == ["h2"]
        assert ledger.stats(NOW).total_entries == 2


class TestFilters:
    def _entries(self):
        return [
            entry("a", confidence=0.9, speaker="Speaker 1", meeting="Standup", user="Ann", method="manual"),
            entry("b", confidence=0.6, speaker="Speaker 2", meeting="Retro", user="Bob", method="suggested",
                  days_ago=1),
            entry("c", action="skipped", speaker="Speaker 3", meeting="Standup", days_ago=2),
        ]

    def test_search_matches_speaker_meeting_or_user(self):
        assert [e.id for e in apply_filters(self._entries(), HistoryFilters(search="bob"))] == ["b"]
        assert {e.id for e in apply_filters(self._entries(), HistoryFilters(search="standup"))} == {"a", "c"}

    def test_method_and_confidence(self):
        f = HistoryFilters(method="suggested")
        assert [e.id for e in apply_filters(self._entries(), f)] == ["b"]
        f = HistoryFilters(min_confidence=0.7)
        assert [e.id for e in apply_filters(self._entries(), f)] == ["a"]

    def test_date_range(self):
        f = HistoryFilters(date_from=NOW - timedelta(days=1, hours=1), date_to=NOW - timedelta(hours=1))
        assert [e.id for e in apply_filters(self._entries(), f)] == ["b"]

    def test_sorting(self):
        entries = self._entries()
        assert [e.id for e in apply_filters(entries)] == ["a", "b", "c"]
        assert [e.id for e in apply_filters(entries, descending=False)] == ["c", "b", "a"]
        assert [e.id for e in apply_filters(entries, sort_field="speaker", descending=False)] == ["a", "b", "c"]

    def test_unknown_sort_field(self):
        with pytest.raises(ValueError):
            apply_filters([], sort_field="colour")


class TestStats:
    def test_counts_and_average(self):
        entries = [
            entry("a", confidence=0.9, method="manual"),
            entry("b", confidence=0.7, method="suggested"),
            entry("c", action="skipped"),
            entry("d", action="deferred"),
            entry("m", action="merged", kind="merge"),
        ]
        stats = compute_stats(entries, NOW)
        assert stats.total_entries == 4
        assert stats.identified_count == 2
        assert stats.skipped_count == 1
        assert stats.deferred_count == 1
        assert stats.average_confidence == pytest.approx(0.8)
        assert stats.method_breakdown == {"manual": 1, "suggested": 1, "matched": 0}

    def test_daily_activity_and_trend(self):
        entries = [
            entry("old", action="skipped", days_ago=6),
            entry("t1", days_ago=0),
            entry("t2", days_ago=0),
            entry("t3", action="skipped", days_ago=0),
            entry("too_old", days_ago=8),
        ]
        stats = compute_stats(entries, NOW)
        assert len(stats.daily_activity) == 7
        assert stats.daily_activity[0].day == (NOW - timedelta(days=6)).date()
        assert stats.daily_activity[0].count == 1
        assert stats.daily_activity[-1].count == 3
        assert stats.daily_activity[-1].accuracy == pytest.approx(2 / 3)
        assert stats.accuracy_trend == pytest.approx(2 / 3)

    def test_empty(self):
        stats = compute_stats([], NOW)
        assert stats.total_entries == 0
        assert stats.average_confidence == 0.0
        assert stats.accuracy_trend == 0.0
