"""CRUD operations for the SpeakerSift profile store."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime

from speakersift.config import ThresholdConfig
from speakersift.errors import PersistenceFailure
from speakersift.storage.database import Database
from speakersift.storage.models import (
    AudioSample,
    HistoryEntry,
    IdentificationRecord,
    IdentificationRequest,
    MatchSuggestion,
    SampleTranscript,
    SpeakerProfile,
)

log = logging.getLogger(__name__)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ProfileStore:
    """Persistence for voice profiles, identification requests and history."""

    def __init__(self, db: Database, thresholds: ThresholdConfig | None = None):
        self.db = db
        self.thresholds = thresholds or ThresholdConfig()

    @contextmanager
    def _write(self, what: str):
        """Commit on success; roll back and raise PersistenceFailure on sqlite errors."""
        try:
            yield self.db.conn
            self.db.conn.commit()
        except sqlite3.Error as e:
            self.db.conn.rollback()
            log.error("Persistence failure while %s: %s", what, e)
            raise PersistenceFailure(f"Failed {what}: {e}") from e
        except Exception:
            self.db.conn.rollback()
            raise

    def _read(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self.db.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Query failed: {e}") from e

    # ── Profiles ───────────────────────────────────────────────────

    def get_profile(self, voice_id: str) -> SpeakerProfile | None:
        rows = self._read("SELECT * FROM voice_profiles WHERE voice_id = ?", (voice_id,))
        if not rows:
            return None
        return self._load_profile(rows[0])

    def get_or_create_profile(self, voice_id: str, now: datetime | None = None) -> SpeakerProfile:
        profile = self.get_profile(voice_id)
        if profile is not None:
            return profile
        now = now or datetime.now()
        profile = SpeakerProfile(voice_id=voice_id, first_heard=now, last_heard=now)
        self.save_profile(profile)
        log.debug("Created profile for voice %s", voice_id)
        return profile

    def save_profile(self, profile: SpeakerProfile):
        """Insert or replace a profile along with its samples and history."""
        with self._write(f"saving profile {profile.voice_id}") as conn:
            self._upsert_profile(conn, profile)

    def list_profiles(
        self, confirmed: bool | None = None, include_merged: bool = False
    ) -> list[SpeakerProfile]:
        clauses = []
        params: list = []
        if confirmed is not None:
            clauses.append("confirmed = ?")
            params.append(int(confirmed))
        if not include_merged:
            clauses.append("merged_into IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._read(
            f"SELECT * FROM voice_profiles {where} ORDER BY first_heard, voice_id",
            tuple(params),
        )
        return [self._load_profile(r) for r in rows]

    def list_unconfirmed_profiles(self, limit: int = 10) -> list[SpeakerProfile]:
        return self.list_profiles(confirmed=False)[:limit]

    def record_merge(self, merged: SpeakerProfile, secondary_id: str, entry: HistoryEntry):
        """Save the merged profile, retire the secondary and log the entry atomically."""
        with self._write(f"merging {secondary_id} into {merged.voice_id}") as conn:
            self._upsert_profile(conn, merged)
            self._retire(conn, secondary_id, merged.voice_id)
            self._insert_history(conn, entry)

    def identify_voice(
        self,
        voice_id: str,
        user_id: str,
        user_name: str,
        method: str,
        meeting_id: str,
        confidence: float = 1.0,
        now: datetime | None = None,
    ) -> SpeakerProfile:
        """Link a voice to a user and append to its identification history."""
        now = now or datetime.now()
        profile = self.get_or_create_profile(voice_id, now)
        profile.user_id = user_id
        profile.display_name = user_name
        profile.confirmed = confidence >= self.thresholds.identification_confirm_threshold
        profile.confidence = confidence
        profile.last_heard = now
        profile.identification_history.append(
            IdentificationRecord(
                method=method,
                timestamp=now,
                meeting_id=meeting_id,
                confidence=confidence,
                details=f"Identified as {user_name} via {method}",
            )
        )
        self.save_profile(profile)
        return profile

    def add_audio_sample(self, voice_id: str, sample: AudioSample) -> SpeakerProfile:
        """Add a sample, keeping only the best ``max_audio_samples`` by quality."""
        profile = self.get_or_create_profile(voice_id, sample.timestamp)
        samples = profile.audio_samples + [sample]
        samples.sort(key=lambda s: s.quality, reverse=True)
        profile.audio_samples = samples[: self.thresholds.max_audio_samples]
        profile.last_heard = sample.timestamp
        self.save_profile(profile)
        return profile

    def find_potential_matches(
        self, voice_id: str, threshold: float | None = None, limit: int = 5
    ) -> list[MatchSuggestion]:
        """Confirmed voices that could be the same person, best first.

        Ranking uses stored profile confidence only; acoustic matching
        happens upstream.
        """
        if threshold is None:
            threshold = self.thresholds.suggestion_floor
        rows = self._read(
            """SELECT voice_id, user_id, display_name, confidence FROM voice_profiles
               WHERE confirmed = 1 AND merged_into IS NULL AND voice_id != ?
               ORDER BY confidence DESC, voice_id
               LIMIT ?""",
            (voice_id, limit),
        )
        return [
            MatchSuggestion(
                user_id=r["user_id"] or f"user_{r['voice_id']}",
                user_name=r["display_name"] or "Unknown User",
                confidence=r["confidence"],
            )
            for r in rows
            if r["confidence"] >= threshold
        ]

    # ── Identification Requests ────────────────────────────────────

    def create_request(self, request: IdentificationRequest):
        with self._write(f"creating request {request.id}") as conn:
            conn.execute(
                """INSERT INTO identification_requests
                   (id, meeting_id, meeting_title, meeting_date, voice_id,
                    speaker_label, sample_transcripts, audio_url, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    request.id,
                    request.meeting_id,
                    request.meeting_title,
                    _ts(request.meeting_date),
                    request.voice_id,
                    request.speaker_label,
                    json.dumps([asdict(t) for t in request.sample_transcripts]),
                    request.audio_url,
                    request.status,
                    _ts(request.created_at or datetime.now()),
                ),
            )

    def get_request(self, request_id: str) -> IdentificationRequest | None:
        rows = self._read(
            "SELECT * FROM identification_requests WHERE id = ?", (request_id,)
        )
        return self._load_request(rows[0]) if rows else None

    def get_pending_requests(
        self, meeting_id: str | None = None, limit: int = 10
    ) -> list[IdentificationRequest]:
        if meeting_id:
            rows = self._read(
                """SELECT * FROM identification_requests
                   WHERE meeting_id = ? AND status = 'pending'
                   ORDER BY created_at DESC, id""",
                (meeting_id,),
            )
        else:
            rows = self._read(
                """SELECT * FROM identification_requests
                   WHERE status = 'pending'
                   ORDER BY created_at DESC, id
                   LIMIT ?""",
                (limit,),
            )
        return [self._load_request(r) for r in rows]

    def resolve_request(
        self,
        request_id: str,
        action: str,
        user_id: str | None = None,
        user_name: str | None = None,
        now: datetime | None = None,
    ):
        """Record the decision on a request. Repeating the same call is harmless."""
        now = now or datetime.now()
        with self._write(f"resolving request {request_id}") as conn:
            if action == "identified" and user_id:
                conn.execute(
                    """UPDATE identification_requests
                       SET status = ?, resolved_at = ?,
                           resolved_user_id = ?, resolved_user_name = ?
                       WHERE id = ?""",
                    (action, _ts(now), user_id, user_name, request_id),
                )
            else:
                conn.execute(
                    """UPDATE identification_requests
                       SET status = ?, resolved_at = ? WHERE id = ?""",
                    (action, _ts(now), request_id),
                )

    # ── History ────────────────────────────────────────────────────

    def insert_history_entry(self, entry: HistoryEntry):
        with self._write(f"recording history entry {entry.id}") as conn:
            self._insert_history(conn, entry)

    def list_history_entries(self) -> list[HistoryEntry]:
        rows = self._read("SELECT * FROM history_entries ORDER BY seq")
        return [self._load_history(r) for r in rows]

    def record_undo(self, undone: HistoryEntry, original: HistoryEntry):
        """Replace an entry with its undone copy and stack the original, in one transaction.

        Undoing a merge also writes both pre-merge profiles back.
        """
        with self._write(f"undoing {original.id}") as conn:
            if original.kind == "merge":
                for profile in original.snapshot:
                    restored = profile.copy()
                    restored.merged_into = None
                    self._upsert_profile(conn, restored)
            self._update_history(conn, undone)
            conn.execute(
                """INSERT INTO undo_stack
                   (id, timestamp, kind, action, request_id, speaker_label,
                    meeting_title, meeting_date, method, user_id, user_name,
                    confidence, undoable, source_profile_ids, result_profile_id,
                    conflict_count, snapshot_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (original.id, *self._history_values(original)),
            )

    def record_redo(self, original: HistoryEntry):
        """Put an undone entry back and drop it from the undo stack, in one transaction.

        Redoing a merge re-applies the merged profile and retires the secondary again.
        """
        with self._write(f"redoing {original.id}") as conn:
            if original.kind == "merge" and original.merged_profile is not None:
                primary_id, secondary_id = original.source_profile_ids
                self._upsert_profile(conn, original.merged_profile.copy())
                self._retire(conn, secondary_id, primary_id)
            self._update_history(conn, original)
            conn.execute(
                "DELETE FROM undo_stack WHERE position = (SELECT MAX(position) FROM undo_stack)"
            )

    def list_undone(self) -> list[HistoryEntry]:
        rows = self._read("SELECT * FROM undo_stack ORDER BY position")
        return [self._load_history(r) for r in rows]

    # ── Row mapping ────────────────────────────────────────────────

    @staticmethod
    def _retire(conn: sqlite3.Connection, voice_id: str, merged_into: str):
        # rows are kept so the merge can be undone
        conn.execute(
            """UPDATE voice_profiles
               SET merged_into = ?, updated_at = datetime('now')
               WHERE voice_id = ?""",
            (merged_into, voice_id),
        )

    def _insert_history(self, conn: sqlite3.Connection, entry: HistoryEntry):
        row = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM history_entries").fetchone()
        conn.execute(
            """INSERT INTO history_entries
               (id, seq, timestamp, kind, action, request_id, speaker_label,
                meeting_title, meeting_date, method, user_id, user_name,
                confidence, undoable, source_profile_ids, result_profile_id,
                conflict_count, snapshot_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (entry.id, row[0] + 1, *self._history_values(entry)),
        )

    def _update_history(self, conn: sqlite3.Connection, entry: HistoryEntry):
        conn.execute(
            """UPDATE history_entries
               SET timestamp = ?, kind = ?, action = ?, request_id = ?,
                   speaker_label = ?, meeting_title = ?, meeting_date = ?,
                   method = ?, user_id = ?, user_name = ?, confidence = ?,
                   undoable = ?, source_profile_ids = ?, result_profile_id = ?,
                   conflict_count = ?, snapshot_json = ?
               WHERE id = ?""",
            (*self._history_values(entry), entry.id),
        )

    def _upsert_profile(self, conn: sqlite3.Connection, profile: SpeakerProfile):
        conn.execute(
            """INSERT INTO voice_profiles
               (voice_id, user_id, display_name, confirmed, confidence,
                first_heard, last_heard, meetings_count, total_speaking_time, merged_into)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(voice_id) DO UPDATE SET
                 user_id = excluded.user_id,
                 display_name = excluded.display_name,
                 confirmed = excluded.confirmed,
                 confidence = excluded.confidence,
                 first_heard = excluded.first_heard,
                 last_heard = excluded.last_heard,
                 meetings_count = excluded.meetings_count,
                 total_speaking_time = excluded.total_speaking_time,
                 merged_into = excluded.merged_into,
                 updated_at = datetime('now')""",
            (
                profile.voice_id,
                profile.user_id,
                profile.display_name,
                int(profile.confirmed),
                profile.confidence,
                _ts(profile.first_heard),
                _ts(profile.last_heard),
                profile.meetings_count,
                profile.total_speaking_time,
                profile.merged_into,
            ),
        )

        conn.execute("DELETE FROM audio_samples WHERE voice_id = ?", (profile.voice_id,))
        for i, s in enumerate(profile.audio_samples):
            conn.execute(
                """INSERT INTO audio_samples
                   (voice_id, position, url, transcript, quality, duration, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (profile.voice_id, i, s.url, s.transcript, s.quality, s.duration, _ts(s.timestamp)),
            )

        conn.execute(
            "DELETE FROM identification_records WHERE voice_id = ?", (profile.voice_id,)
        )
        for i, r in enumerate(profile.identification_history):
            conn.execute(
                """INSERT INTO identification_records
                   (voice_id, position, method, timestamp, meeting_id, confidence, details)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (profile.voice_id, i, r.method, _ts(r.timestamp), r.meeting_id, r.confidence, r.details),
            )

    def _load_profile(self, row: sqlite3.Row) -> SpeakerProfile:
        samples = self._read(
            "SELECT * FROM audio_samples WHERE voice_id = ? ORDER BY position",
            (row["voice_id"],),
        )
        records = self._read(
            "SELECT * FROM identification_records WHERE voice_id = ? ORDER BY position",
            (row["voice_id"],),
        )
        return SpeakerProfile(
            voice_id=row["voice_id"],
            user_id=row["user_id"],
            display_name=row["display_name"],
            confirmed=bool(row["confirmed"]),
            confidence=row["confidence"],
            first_heard=_dt(row["first_heard"]),
            last_heard=_dt(row["last_heard"]),
            meetings_count=row["meetings_count"],
            total_speaking_time=row["total_speaking_time"],
            merged_into=row["merged_into"],
            audio_samples=[
                AudioSample(
                    url=s["url"],
                    transcript=s["transcript"] or "",
                    quality=s["quality"],
                    duration=s["duration"],
                    timestamp=_dt(s["timestamp"]),
                )
                for s in samples
            ],
            identification_history=[
                IdentificationRecord(
                    method=r["method"],
                    timestamp=_dt(r["timestamp"]),
                    meeting_id=r["meeting_id"] or "",
                    confidence=r["confidence"],
                    details=r["details"] or "",
                )
                for r in records
            ],
        )

    @staticmethod
    def _load_request(row: sqlite3.Row) -> IdentificationRequest:
        transcripts = json.loads(row["sample_transcripts"] or "[]")
        return IdentificationRequest(
            id=row["id"],
            meeting_id=row["meeting_id"],
            meeting_title=row["meeting_title"],
            meeting_date=_dt(row["meeting_date"]),
            voice_id=row["voice_id"],
            speaker_label=row["speaker_label"],
            sample_transcripts=[SampleTranscript(**t) for t in transcripts],
            audio_url=row["audio_url"] or "",
            status=row["status"],
            resolved_user_id=row["resolved_user_id"],
            resolved_user_name=row["resolved_user_name"],
            resolved_at=_dt(row["resolved_at"]),
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _history_values(entry: HistoryEntry) -> tuple:
        return (
            _ts(entry.timestamp),
            entry.kind,
            entry.action,
            entry.request_id,
            entry.speaker_label,
            entry.meeting_title,
            _ts(entry.meeting_date),
            entry.method,
            entry.user_id,
            entry.user_name,
            entry.confidence,
            int(entry.undoable),
            json.dumps(entry.source_profile_ids),
            entry.result_profile_id,
            entry.conflict_count,
            json.dumps({
                "before": [_profile_to_dict(p) for p in entry.snapshot],
                "after": _profile_to_dict(entry.merged_profile) if entry.merged_profile else None,
            }),
        )

    @staticmethod
    def _load_history(row: sqlite3.Row) -> HistoryEntry:
        snapshot = json.loads(row["snapshot_json"] or "{}")
        after = snapshot.get("after")
        return HistoryEntry(
            id=row["id"],
            timestamp=_dt(row["timestamp"]),
            kind=row["kind"],
            action=row["action"],
            request_id=row["request_id"],
            speaker_label=row["speaker_label"] or "",
            meeting_title=row["meeting_title"] or "",
            meeting_date=_dt(row["meeting_date"]),
            method=row["method"],
            user_id=row["user_id"],
            user_name=row["user_name"],
            confidence=row["confidence"],
            undoable=bool(row["undoable"]),
            source_profile_ids=json.loads(row["source_profile_ids"] or "[]"),
            result_profile_id=row["result_profile_id"],
            conflict_count=row["conflict_count"],
            snapshot=[_profile_from_dict(p) for p in snapshot.get("before", [])],
            merged_profile=_profile_from_dict(after) if after else None,
        )


def _profile_to_dict(profile: SpeakerProfile) -> dict:
    return {
        "voice_id": profile.voice_id,
        "user_id": profile.user_id,
        "display_name": profile.display_name,
        "confirmed": profile.confirmed,
        "confidence": profile.confidence,
        "first_heard": _ts(profile.first_heard),
        "last_heard": _ts(profile.last_heard),
        "meetings_count": profile.meetings_count,
        "total_speaking_time": profile.total_speaking_time,
        "merged_into": profile.merged_into,
        "audio_samples": [
            {**asdict(s), "timestamp": _ts(s.timestamp)} for s in profile.audio_samples
        ],
        "identification_history": [
            {**asdict(r), "timestamp": _ts(r.timestamp)} for r in profile.identification_history
        ],
    }


def _profile_from_dict(data: dict) -> SpeakerProfile:
    return SpeakerProfile(
        voice_id=data["voice_id"],
        user_id=data.get("user_id"),
        display_name=data.get("display_name"),
        confirmed=bool(data.get("confirmed", False)),
        confidence=data.get("confidence", 0.0),
        first_heard=_dt(data.get("first_heard")),
        last_heard=_dt(data.get("last_heard")),
        meetings_count=data.get("meetings_count", 0),
        total_speaking_time=data.get("total_speaking_time", 0.0),
        merged_into=data.get("merged_into"),
        audio_samples=[
            AudioSample(**{**s, "timestamp": _dt(s["timestamp"])})
            for s in data.get("audio_samples", [])
        ],
        identification_history=[
            IdentificationRecord(**{**r, "timestamp": _dt(r["timestamp"])})
            for r in data.get("identification_history", [])
        ],
    )


def profile_from_dict(data: dict) -> SpeakerProfile:
    """Build a profile from an import file entry (camelCase keys accepted)."""
    aliases = {
        "deepgramVoiceId": "voice_id",
        "userId": "user_id",
        "userName": "display_name",
        "displayName": "display_name",
        "firstHeard": "first_heard",
        "lastHeard": "last_heard",
        "meetingsCount": "meetings_count",
        "totalSpeakingTime": "total_speaking_time",
        "audioSamples": "audio_samples",
        "identificationHistory": "identification_history",
    }
    normalized = {aliases.get(k, k): v for k, v in data.items()}
    return _profile_from_dict(normalized)


def request_from_dict(data: dict) -> IdentificationRequest:
    """Build an identification request from an import file entry."""
    return IdentificationRequest(
        id=data["id"],
        meeting_id=data["meeting_id"],
        meeting_title=data.get("meeting_title", ""),
        meeting_date=_dt(data["meeting_date"]),
        voice_id=data["voice_id"],
        speaker_label=data.get("speaker_label", data["voice_id"]),
        sample_transcripts=[SampleTranscript(**t) for t in data.get("sample_transcripts", [])],
        audio_url=data.get("audio_url", ""),
        created_at=_dt(data.get("created_at")),
    )
