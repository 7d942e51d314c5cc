"""Tests for speakersift.storage.database."""

from __future__ import annotations

import pytest

from speakersift.errors import PersistenceFailure
from speakersift.storage.database import SCHEMA_VERSION, Database


class TestDatabase:
    def test_context_manager_creates_tables(self, tmp_path):
        with Database(tmp_path / "test.db") as db:
            tables = db.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            ).fetchall()
            table_names = {r[0] for r in tables}
            assert {
                "voice_profiles",
                "audio_samples",
                "identification_records",
                "identification_requests",
                "history_entries",
                "undo_stack",
                "schema_version",
            } <= table_names

    def test_initialize_is_idempotent(self, tmp_path):
        db = Database(tmp_path / "test.db")
        db.initialize()
        db.initialize()
        rows = db.conn.execute("SELECT version FROM schema_version").fetchall()
        assert [r["version"] for r in rows] == [SCHEMA_VERSION]
        db.close()

    def test_creates_parent_directories(self, tmp_path):
        db_path = tmp_path / "deep" / "nested" / "test.db"
        with Database(db_path):
            assert db_path.parent.is_dir()

    def test_close_resets_connection(self, tmp_path):
        db = Database(tmp_path / "test.db")
        db.initialize()
        db.close()
        assert db._conn is None

    def test_unwritable_path_raises_persistence_failure(self, tmp_path):
        target = tmp_path / "is_a_dir.db"
        target.mkdir()
        with pytest.raises(PersistenceFailure):
            Database(target).initialize()
