"""Configuration and constants for SpeakerSift."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path

# Paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "speakersift.db"
CONFIG_JSON_PATH = PROJECT_ROOT / "speakersift.json"

# Confidence tiers for duplicate candidates
HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.6

# A duplicate pair at or above this score with no conflicts merges without review
MERGE_THRESHOLD = 0.85

# Suggestions at or above this confidence are pre-selected in the workflow
AUTO_SUGGESTION_THRESHOLD = 0.7

# Profiles identified at or above this confidence are marked confirmed
IDENTIFICATION_CONFIRM_THRESHOLD = 0.7

MAX_AUDIO_SAMPLES = 5

POSITIONS = ("top", "bottom", "center")
THEMES = ("light", "dark", "auto")

# camelCase option names accepted in speakersift.json
_ALERT_KEY_ALIASES = {
    "minimumDuration": "minimum_duration",
    "minimumConfidence": "minimum_confidence",
    "minimumMessages": "minimum_messages",
    "alertDelay": "alert_delay",
    "autoHideDelay": "auto_hide_delay",
    "maxSimultaneousAlerts": "max_simultaneous_alerts",
    "batchSimilarAlerts": "batch_similar_alerts",
    "batchTimeWindow": "batch_time_window",
    "suppressRepeatedAlerts": "suppress_repeated_alerts",
    "suppressionDuration": "suppression_duration",
}


@dataclass
class AlertConfig:
    """Thresholds and behaviour for unknown-speaker alerts.

    Durations ending in ``_delay``, ``_window`` or ``suppression_duration``
    are milliseconds; ``minimum_duration`` is seconds of speech.
    """

    minimum_duration: float = 5
    minimum_confidence: float = 0.6
    minimum_messages: int = 2
    alert_delay: int = 2000
    auto_hide_delay: int = 0
    max_simultaneous_alerts: int = 3
    batch_similar_alerts: bool = True
    batch_time_window: int = 30000
    suppress_repeated_alerts: bool = True
    suppression_duration: int = 300000
    position: str = "top"
    theme: str = "auto"

    def validate(self):
        """Raise ValueError naming the first out-of-range option."""
        if not 0 <= self.minimum_confidence <= 1:
            raise ValueError(f"minimum_confidence must be within [0, 1], got {self.minimum_confidence}")
        for name in ("minimum_duration", "minimum_messages", "alert_delay",
                     "auto_hide_delay", "batch_time_window", "suppression_duration"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.max_simultaneous_alerts < 1:
            raise ValueError("max_simultaneous_alerts must be at least 1")
        if self.position not in POSITIONS:
            raise ValueError(f"position must be one of {', '.join(POSITIONS)}")
        if self.theme not in THEMES:
            raise ValueError(f"theme must be one of {', '.join(THEMES)}")

    @classmethod
    def from_dict(cls, data: dict) -> AlertConfig:
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            name = _ALERT_KEY_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown alert option: {key}")
            values[name] = value
        config = cls(**values)
        config.validate()
        return config


@dataclass
class ThresholdConfig:
    """Named scoring thresholds shared by the comparator, merger and workflow."""

    high_confidence: float = HIGH_CONFIDENCE
    medium_confidence: float = MEDIUM_CONFIDENCE
    merge_threshold: float = MERGE_THRESHOLD
    auto_suggestion_threshold: float = AUTO_SUGGESTION_THRESHOLD
    identification_confirm_threshold: float = IDENTIFICATION_CONFIRM_THRESHOLD
    max_audio_samples: int = MAX_AUDIO_SAMPLES
    duplicate_scan_floor: float = MEDIUM_CONFIDENCE
    suggestion_floor: float = 0.5

    def validate(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "max_audio_samples":
                if value < 1:
                    raise ValueError("max_audio_samples must be at least 1")
            elif not 0 <= value <= 1:
                raise ValueError(f"{f.name} must be within [0, 1], got {value}")
        if self.medium_confidence > self.high_confidence:
            raise ValueError("medium_confidence must not exceed high_confidence")

    @classmethod
    def from_dict(cls, data: dict) -> ThresholdConfig:
        known = {f.name for f in fields(cls)}
        for key in data:
            if key not in known:
                raise ValueError(f"Unknown threshold option: {key}")
        config = cls(**data)
        config.validate()
        return config


@dataclass
class EngineConfig:
    """Top-level configuration loaded from speakersift.json."""

    alerts: AlertConfig = field(default_factory=AlertConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    show_voice_comparison: bool = True

    @property
    def exports_dir(self) -> Path:
        return self.db_path.parent / "exports"

    def to_dict(self) -> dict:
        return {
            "alerts": asdict(self.alerts),
            "thresholds": asdict(self.thresholds),
            "db_path": str(self.db_path),
            "show_voice_comparison": self.show_voice_comparison,
        }


def load_config(path: Path | None = None) -> EngineConfig:
    """Load configuration from JSON. Missing file or keys fall back to defaults."""
    path = path or CONFIG_JSON_PATH
    if not path.exists():
        return EngineConfig()

    data = json.loads(path.read_text())
    alerts = AlertConfig.from_dict(data.get("alerts", {}))

    thresholds = ThresholdConfig.from_dict(data.get("thresholds", {}))

    db_path = DEFAULT_DB_PATH
    if "db_path" in data:
        db_path = Path(data["db_path"])
        if not db_path.is_absolute():
            db_path = PROJECT_ROOT / db_path

    return EngineConfig(
        alerts=alerts,
        thresholds=thresholds,
        db_path=db_path,
        show_voice_comparison=data.get("show_voice_comparison", True),
    )


def save_config(config: EngineConfig, path: Path | None = None):
    """Write configuration back to JSON."""
    path = path or CONFIG_JSON_PATH
    path.write_text(json.dumps(config.to_dict(), indent=2) + "\n")
