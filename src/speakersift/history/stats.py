"""Statistics derived from identification history. Always recomputed, never stored."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from speakersift.storage.models import METHODS, HistoryEntry


@dataclass
class DailyActivity:
    day: date
    count: int
    accuracy: float  # identified / total for the day


@dataclass
class HistoryStats:
    total_entries: int = 0
    identified_count: int = 0
    skipped_count: int = 0
    deferred_count: int = 0
    undone_count: int = 0
    average_confidence: float = 0.0
    accuracy_trend: float = 0.0
    method_breakdown: dict[str, int] = field(default_factory=lambda: dict.fromkeys(METHODS, 0))
    daily_activity: list[DailyActivity] = field(default_factory=list)


def compute_stats(entries: list[HistoryEntry], now: datetime, days: int = 7) -> HistoryStats:
    """Summarise identification entries; merge entries are ignored."""
    entries = [e for e in entries if e.kind == "identification"]
    identified = [e for e in entries if e.action == "identified"]

    breakdown = dict.fromkeys(METHODS, 0)
    for e in entries:
        if e.method in breakdown:
            breakdown[e.method] += 1

    today = now.date()
    daily = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        day_entries = [e for e in entries if e.timestamp.date() == day]
        day_identified = sum(1 for e in day_entries if e.action == "identified")
        daily.append(DailyActivity(
            day=day,
            count=len(day_entries),
            accuracy=day_identified / len(day_entries) if day_entries else 0.0,
        ))

    return HistoryStats(
        total_entries=len(entries),
        identified_count=len(identified),
        skipped_count=sum(1 for e in entries if e.action == "skipped"),
        deferred_count=sum(1 for e in entries if e.action == "deferred"),
        undone_count=sum(1 for e in entries if e.action == "undone"),
        average_confidence=(
            sum(e.confidence for e in identified) / len(identified) if identified else 0.0
        ),
        accuracy_trend=daily[-1].accuracy - daily[0].accuracy if len(daily) > 1 else 0.0,
        method_breakdown=breakdown,
        daily_activity=daily,
    )
