"""CSV and JSON export of the identification history."""

from __future__ import annotations

import csv
import json
from pathlib import Path

from speakersift.storage.models import HistoryEntry

EXPORT_FIELDS = ("timestamp", "speaker", "meeting", "action", "method", "user", "confidence")


def history_rows(entries: list[HistoryEntry]) -> list[dict]:
    """Flatten history entries into rows keyed by EXPORT_FIELDS, in that order."""
    rows = []
    for e in entries:
        rows.append({
            "timestamp": e.timestamp.isoformat(),
            "speaker": e.speaker_label,
            "meeting": e.meeting_title,
            "action": e.action,
            "method": e.method or "",
            "user": e.user_name or "",
            "confidence": round(e.confidence, 4),
        })
    return rows


def export_history_csv(entries: list[HistoryEntry], path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = history_rows(entries)
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_FIELDS)
        writer.writeheader()
        writer.writerows(rows)
    return len(rows)


def export_history_json(entries: list[HistoryEntry], path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = history_rows(entries)
    _write_json(path, rows)
    return len(rows)


def _write_json(path: Path, data):
    """Write data as formatted JSON."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
