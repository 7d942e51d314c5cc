"""SQLite database schema and connection management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from speakersift.errors import PersistenceFailure

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- One row per stable voice identifier
CREATE TABLE IF NOT EXISTS voice_profiles (
    voice_id            TEXT PRIMARY KEY,
    user_id             TEXT,
    display_name        TEXT,
    confirmed           INTEGER DEFAULT 0,
    confidence          REAL DEFAULT 0,
    first_heard         TEXT,
    last_heard          TEXT,
    meetings_count      INTEGER DEFAULT 0,
    total_speaking_time REAL DEFAULT 0,
    merged_into         TEXT REFERENCES voice_profiles(voice_id),
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

-- Best-quality audio clips for each voice
CREATE TABLE IF NOT EXISTS audio_samples (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    voice_id   TEXT NOT NULL REFERENCES voice_profiles(voice_id) ON DELETE CASCADE,
    position   INTEGER NOT NULL,
    url        TEXT NOT NULL,
    transcript TEXT,
    quality    REAL DEFAULT 0,
    duration   REAL DEFAULT 0,
    timestamp  TEXT NOT NULL
);

-- How each voice was identified over time
CREATE TABLE IF NOT EXISTS identification_records (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    voice_id   TEXT NOT NULL REFERENCES voice_profiles(voice_id) ON DELETE CASCADE,
    position   INTEGER NOT NULL,
    method     TEXT NOT NULL,
    timestamp  TEXT NOT NULL,
    meeting_id TEXT,
    confidence REAL DEFAULT 0,
    details    TEXT
);

-- Voices awaiting a human identification decision
CREATE TABLE IF NOT EXISTS identification_requests (
    id                 TEXT PRIMARY KEY,
    meeting_id         TEXT NOT NULL,
    meeting_title      TEXT NOT NULL,
    meeting_date       TEXT NOT NULL,
    voice_id           TEXT NOT NULL,
    speaker_label      TEXT NOT NULL,
    sample_transcripts TEXT,
    audio_url          TEXT,
    status             TEXT NOT NULL DEFAULT 'pending',
    resolved_user_id   TEXT,
    resolved_user_name TEXT,
    resolved_at        TEXT,
    created_at         TEXT DEFAULT (datetime('now'))
);

-- Identification and merge decisions
CREATE TABLE IF NOT EXISTS history_entries (
    id                 TEXT PRIMARY KEY,
    seq                INTEGER NOT NULL,
    timestamp          TEXT NOT NULL,
    kind               TEXT NOT NULL,
    action             TEXT NOT NULL,
    request_id         TEXT,
    speaker_label      TEXT,
    meeting_title      TEXT,
    meeting_date       TEXT,
    method             TEXT,
    user_id            TEXT,
    user_name          TEXT,
    confidence         REAL DEFAULT 0,
    undoable           INTEGER DEFAULT 0,
    source_profile_ids TEXT,
    result_profile_id  TEXT,
    conflict_count     INTEGER DEFAULT 0,
    snapshot_json      TEXT
);

-- Originals of undone entries, most recent last
CREATE TABLE IF NOT EXISTS undo_stack (
    position           INTEGER PRIMARY KEY AUTOINCREMENT,
    id                 TEXT NOT NULL,
    timestamp          TEXT NOT NULL,
    kind               TEXT NOT NULL,
    action             TEXT NOT NULL,
    request_id         TEXT,
    speaker_label      TEXT,
    meeting_title      TEXT,
    meeting_date       TEXT,
    method             TEXT,
    user_id            TEXT,
    user_name          TEXT,
    confidence         REAL DEFAULT 0,
    undoable           INTEGER DEFAULT 0,
    source_profile_ids TEXT,
    result_profile_id  TEXT,
    conflict_count     INTEGER DEFAULT 0,
    snapshot_json      TEXT
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_profiles_confirmed ON voice_profiles(confirmed);
CREATE INDEX IF NOT EXISTS idx_audio_samples_voice ON audio_samples(voice_id);
CREATE INDEX IF NOT EXISTS idx_identification_records_voice ON identification_records(voice_id);
CREATE INDEX IF NOT EXISTS idx_requests_status ON identification_requests(status);
CREATE INDEX IF NOT EXISTS idx_requests_meeting ON identification_requests(meeting_id);
CREATE INDEX IF NOT EXISTS idx_history_seq ON history_entries(seq);
"""


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create all tables if they don't exist."""
        try:
            self.conn.executescript(SCHEMA_SQL)
            row = self.conn.execute(
                "SELECT version FROM schema_version LIMIT 1"
            ).fetchone()
            if row is None:
                self.conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (SCHEMA_VERSION,),
                )
            self.conn.commit()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not initialize {self.db_path}: {e}") from e

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, *args):
        self.close()
