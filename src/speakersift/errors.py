"""Exception types raised by SpeakerSift."""

from __future__ import annotations


class SpeakerSiftError(Exception):
    """Base class for all SpeakerSift errors."""


class ValidationError(SpeakerSiftError):
    """Input failed a precondition (bad config value, malformed candidate, etc.)."""


class ConflictsUnresolved(SpeakerSiftError):
    """A merge was attempted while some field conflicts have no resolution."""

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(f"Unresolved merge conflicts: {', '.join(fields)}")


class UnknownBatchKey(SpeakerSiftError):
    """An alert batch or history entry referenced by key does not exist."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Unknown key: {key}")


class PersistenceFailure(SpeakerSiftError):
    """The profile store could not complete a read or write."""
