"""Tests for speakersift.storage.export."""

from __future__ import annotations

import csv
import json

from speakersift.storage.export import (
    EXPORT_FIELDS,
    export_history_csv,
    export_history_json,
    history_rows,
)
from speakersift.storage.models import HistoryEntry

from conftest import NOW


def _entries():
    return [
        HistoryEntry(
            id="h1", timestamp=NOW, action="identified", speaker_label="Speaker 1",
            meeting_title="Standup", method="manual", user_name="Ann", confidence=0.9,
        ),
        HistoryEntry(id="h2", timestamp=NOW, action="skipped", speaker_label="Speaker 2",
                     meeting_title="Standup"),
    ]


class TestHistoryRows:
    def test_field_order(self):
        rows = history_rows(_entries())
        assert list(rows[0]) == list(EXPORT_FIELDS)
        assert list(EXPORT_FIELDS) == [
            "timestamp", "speaker", "meeting", "action", "method", "user", "confidence",
        ]

    def test_missing_values_are_blank(self):
        row = history_rows(_entries())[1]
        assert row["method"] == ""
        assert row["user"] == ""
        assert row["confidence"] == 0.0


class TestExportFiles:
    def test_csv(self, tmp_path):
        path = tmp_path / "out" / "history.csv"
        assert export_history_csv(_entries(), path) == 2
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            header = next(reader)
            rows = list(reader)
        assert header == list(EXPORT_FIELDS)
        assert rows[0][1:4] == ["Speaker 1", "Standup", "identified"]

    def test_json(self, tmp_path):
        path = tmp_path / "history.json"
        assert export_history_json(_entries(), path) == 2
        data = json.loads(path.read_text())
        assert data[0]["user"] == "Ann"
        assert data[0]["timestamp"] == NOW.isoformat()
