"""Filter and sort history entries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from speakersift.storage.models import HistoryEntry

SORT_FIELDS = {
    "timestamp": lambda e: e.timestamp,
    "confidence": lambda e: e.confidence,
    "meeting": lambda e: e.meeting_title,
    "speaker": lambda e: e.speaker_label,
    "method": lambda e: e.method or "",
}


@dataclass
class HistoryFilters:
    search: str = ""
    action: str = "all"  # all | identified | skipped | deferred | undone | merged
    method: str = "all"  # all | manual | suggested | matched
    min_confidence: float = 0.0
    max_confidence: float = 1.0
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    meeting: str = ""
    user: str = ""

    def matches(self, entry: HistoryEntry) -> bool:
        if self.search:
            needle = self.search.lower()
            haystack = (entry.speaker_label, entry.meeting_title, entry.user_name or "")
            if not any(needle in h.lower() for h in haystack):
                return False

        if self.action != "all" and entry.action != self.action:
            return False
        if self.method != "all" and entry.method != self.method:
            return False
        if not self.min_confidence <= entry.confidence <= self.max_confidence:
            return False

        if self.date_from and entry.timestamp < self.date_from:
            return False
        if self.date_to and entry.timestamp > self.date_to:
            return False

        if self.meeting and self.meeting.lower() not in entry.meeting_title.lower():
            return False
        if self.user and (not entry.user_name or self.user.lower() not in entry.user_name.lower()):
            return False
        return True


def apply_filters(
    entries: list[HistoryEntry],
    filters: HistoryFilters | None = None,
    sort_field: str = "timestamp",
    descending: bool = True,
) -> list[HistoryEntry]:
    if sort_field not in SORT_FIELDS:
        raise ValueError(f"Unknown sort field: {sort_field}")
    filters = filters or HistoryFilters()
    selected = [e for e in entries if filters.matches(e)]
    return sorted(selected, key=SORT_FIELDS[sort_field], reverse=descending)
