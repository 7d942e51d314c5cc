"""Shared test fixtures for SpeakerSift."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from speakersift.config import AlertConfig
from speakersift.history.ledger import HistoryLedger
from speakersift.storage.database import Database
from speakersift.storage.models import (
    AudioSample,
    IdentificationRequest,
    SampleTranscript,
    SpeakerDetection,
    SpeakerProfile,
    VoiceSignature,
)
from speakersift.storage.repository import ProfileStore

NOW = datetime(2024, 3, 15, 10, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def tmp_db(tmp_path):
    """Temp database with schema initialized."""
    db_path = tmp_path / "test.db"
    with Database(db_path) as db:
        yield db


@pytest.fixture
def store(tmp_db):
    return ProfileStore(tmp_db)


@pytest.fixture
def ledger(store):
    return HistoryLedger(store)


@pytest.fixture
def alert_config():
    """Defaults with suppression off so dismissal timing is easy to reason about."""
    return AlertConfig(suppress_repeated_alerts=False)


def make_detection(
    speaker_id="s1",
    confidence=0.75,
    duration=6.0,
    message_count=3,
    detected_at=NOW,
    pitch="medium",
    pace="normal",
) -> SpeakerDetection:
    return SpeakerDetection(
        speaker_id=speaker_id,
        voice_id=f"voice_{speaker_id}",
        confidence=confidence,
        duration=duration,
        message_count=message_count,
        detected_at=detected_at,
        last_active_at=detected_at,
        signature=VoiceSignature(pitch, pace),
    )


def make_profile(
    voice_id="v1",
    user_id=None,
    display_name=None,
    confirmed=False,
    confidence=0.5,
    first_heard=NOW - timedelta(days=10),
    last_heard=NOW - timedelta(days=1),
    meetings_count=1,
    total_speaking_time=60.0,
    samples=0,
) -> SpeakerProfile:
    return SpeakerProfile(
        voice_id=voice_id,
        user_id=user_id,
        display_name=display_name,
        confirmed=confirmed,
        confidence=confidence,
        first_heard=first_heard,
        last_heard=last_heard,
        meetings_count=meetings_count,
        total_speaking_time=total_speaking_time,
        audio_samples=[
            AudioSample(
                url=f"https://audio.example.com/{voice_id}/{i}.wav",
                transcript=f"sample {i}",
                quality=0.5 + i * 0.1,
                duration=4.0,
                timestamp=NOW - timedelta(days=2),
            )
            for i in range(samples)
        ],
    )


def make_request(request_id="req_1", voice_id="v_unknown", label="Speaker 2") -> IdentificationRequest:
    return IdentificationRequest(
        id=request_id,
        meeting_id="m1",
        meeting_title="Weekly Planning",
        meeting_date=NOW - timedelta(hours=2),
        voice_id=voice_id,
        speaker_label=label,
        sample_transcripts=[
            SampleTranscript("Let's look at the roadmap.", 12.0, 15.5),
            SampleTranscript("I can take that one.", 40.0, 41.2),
        ],
        created_at=NOW - timedelta(hours=1),
    )


@pytest.fixture
def profile_factory():
    return make_profile


@pytest.fixture
def detection_factory():
    return make_detection


@pytest.fixture
def request_factory():
    return make_request
