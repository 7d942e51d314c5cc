"""Step-by-step identification of unknown speakers.

Each request in the queue goes through ``review -> [compare] -> identify ->
confirm`` and ends in exactly one result: identified, skipped or deferred.
The compare step only exists when voice comparison is enabled.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from speakersift.config import ThresholdConfig
from speakersift.errors import ValidationError
from speakersift.history.ledger import HistoryLedger
from speakersift.storage.models import (
    METHODS,
    AudioSample,
    HistoryEntry,
    IdentificationRequest,
    IdentificationResult,
    MatchSuggestion,
    SpeakerProfile,
)
from speakersift.storage.repository import ProfileStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowStep:
    id: str
    title: str
    description: str
    can_skip: bool


REVIEW = WorkflowStep("review", "Review Speaker", "Listen to voice samples and review speaker information", False)
COMPARE = WorkflowStep("compare", "Compare Voices", "Compare with existing voice profiles if available", True)
IDENTIFY = WorkflowStep("identify", "Identify Speaker", "Choose identification method and provide speaker details", True)
CONFIRM = WorkflowStep("confirm", "Confirm Decision", "Review and confirm the identification decision", False)


def build_steps(show_voice_comparison: bool = True) -> list[WorkflowStep]:
    if show_voice_comparison:
        return [REVIEW, COMPARE, IDENTIFY, CONFIRM]
    return [REVIEW, IDENTIFY, CONFIRM]


def quality_score(sample_count: int, transcript_count: int) -> float:
    return min(0.5 + sample_count * 0.1 + transcript_count * 0.1, 1.0)


def new_user_id() -> str:
    return f"user_{uuid.uuid4().hex[:12]}"


@dataclass
class CurrentRequest:
    request: IdentificationRequest
    voice_samples: list[AudioSample] = field(default_factory=list)
    suggestions: list[MatchSuggestion] = field(default_factory=list)
    available_profiles: list[SpeakerProfile] = field(default_factory=list)
    quality_score: float = 0.5


@dataclass
class WorkflowState:
    index: int = 0
    step_index: int = 0
    current: Optional[CurrentRequest] = None
    manual_name: str = ""
    selected_suggestion: Optional[MatchSuggestion] = None
    selected_profile: Optional[SpeakerProfile] = None
    method: str = "manual"
    confidence: float = 0.8
    results: list[IdentificationResult] = field(default_factory=list)
    finished: bool = False


class IdentificationWorkflow:
    """Drive a queue of identification requests to terminal results.

    Calls to the store are not retried here. If one fails the error is raised
    and the workflow stays on the same request.
    """

    def __init__(
        self,
        requests: list[IdentificationRequest],
        store: ProfileStore,
        ledger: HistoryLedger | None = None,
        show_voice_comparison: bool = True,
        thresholds: ThresholdConfig | None = None,
        user_id_factory: Callable[[], str] = new_user_id,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.requests = list(requests)
        self.store = store
        self.ledger = ledger
        self.steps = build_steps(show_voice_comparison)
        self.thresholds = thresholds or store.thresholds
        self.user_id_factory = user_id_factory
        self.clock = clock
        self.state = WorkflowState(finished=not self.requests)
        if self.requests:
            self.load()

    # ── Queries ────────────────────────────────────────────────────

    @property
    def current_step(self) -> WorkflowStep:
        return self.steps[self.state.step_index]

    @property
    def current(self) -> CurrentRequest | None:
        return self.state.current

    @property
    def results(self) -> list[IdentificationResult]:
        return list(self.state.results)

    @property
    def finished(self) -> bool:
        return self.state.finished

    @property
    def progress(self) -> float:
        if not self.requests:
            return 1.0
        return len(self.state.results) / len(self.requests)

    # ── Loading ────────────────────────────────────────────────────

    def load(self):
        """Fetch samples, suggestions and comparison profiles for the current request."""
        request = self.requests[self.state.index]
        profile = self.store.get_profile(request.voice_id)
        samples = profile.audio_samples[:5] if profile else []
        suggestions = self.store.find_potential_matches(
            request.voice_id, self.thresholds.suggestion_floor
        )
        available = [
            p for p in self.store.list_unconfirmed_profiles(10)
            if p.voice_id != request.voice_id
        ]

        self.state.current = CurrentRequest(
            request=request,
            voice_samples=samples,
            suggestions=suggestions,
            available_profiles=available,
            quality_score=quality_score(len(samples), len(request.sample_transcripts)),
        )
        self.state.step_index = 0
        self.state.manual_name = ""
        self.state.selected_suggestion = None
        self.state.selected_profile = None
        self.state.method = "manual"
        self.state.confidence = 0.8

        if suggestions and suggestions[0].confidence >= self.thresholds.auto_suggestion_threshold:
            self.select_suggestion(suggestions[0])
            log.debug("Pre-selected suggestion %s for %s", suggestions[0].user_name, request.id)

    # ── Form input ─────────────────────────────────────────────────

    def set_manual_name(self, name: str):
        self.state.manual_name = name
        self.state.method = "manual"

    def select_suggestion(self, suggestion: MatchSuggestion):
        self.state.selected_suggestion = suggestion
        self.state.method = "suggested"
        self.state.confidence = suggestion.confidence

    def select_profile(self, profile: SpeakerProfile):
        self.state.selected_profile = profile
        self.state.method = "matched"

    def set_method(self, method: str):
        if method not in METHODS:
            raise ValidationError(f"Unknown identification method: {method}")
        self.state.method = method

    def set_confidence(self, value: float):
        if not 0 <= value <= 1:
            raise ValidationError(f"Confidence must be within [0, 1], got {value}")
        self.state.confidence = value

    # ── Navigation ─────────────────────────────────────────────────

    def next_step(self) -> WorkflowStep:
        if self.state.step_index < len(self.steps) - 1:
            self.state.step_index += 1
        return self.current_step

    def previous_step(self) -> WorkflowStep:
        if self.state.step_index > 0:
            self.state.step_index -= 1
        return self.current_step

    # ── Terminal transitions ───────────────────────────────────────

    def skip(self) -> IdentificationResult:
        """Skip the current request regardless of what has been entered."""
        self._require_skippable("skip")
        request = self._request()
        self.store.resolve_request(request.id, "skipped", now=self.clock())
        return self._finish(IdentificationResult(request_id=request.id, action="skipped"))

    def defer(self) -> IdentificationResult:
        """Leave the request for later without deciding."""
        self._require_skippable("defer")
        request = self._request()
        self.store.resolve_request(request.id, "deferred", now=self.clock())
        return self._finish(IdentificationResult(request_id=request.id, action="deferred"))

    def submit(self) -> IdentificationResult:
        """Record the decision from the confirm step.

        An incomplete form (no name, suggestion or profile for the chosen
        method) is recorded as skipped rather than identified.
        """
        if self.current_step.id != CONFIRM.id:
            raise ValidationError(f"Submit is only allowed on the confirm step, not {self.current_step.id}")
        request = self._request()
        state = self.state
        name = state.manual_name.strip()

        if state.method == "manual" and name:
            result = IdentificationResult(
                request_id=request.id,
                action="identified",
                user_id=self.user_id_factory(),
                user_name=name,
                confidence=state.confidence,
                method="manual",
            )
        elif state.method == "suggested" and state.selected_suggestion:
            s = state.selected_suggestion
            result = IdentificationResult(
                request_id=request.id,
                action="identified",
                user_id=s.user_id,
                user_name=s.user_name,
                confidence=s.confidence,
                method="suggested",
            )
        elif state.method == "matched" and state.selected_profile:
            p = state.selected_profile
            result = IdentificationResult(
                request_id=request.id,
                action="identified",
                user_id=p.user_id or f"user_{p.voice_id}",
                user_name=p.display_name or "Unknown User",
                confidence=state.confidence,
                method="matched",
            )
        else:
            log.info("Incomplete %s identification for %s; recording skip", state.method, request.id)
            result = IdentificationResult(request_id=request.id, action="skipped")

        now = self.clock()
        if result.action == "identified":
            self.store.resolve_request(request.id, "identified", result.user_id, result.user_name, now=now)
            self.store.identify_voice(
                request.voice_id,
                result.user_id,
                result.user_name,
                result.method,
                request.meeting_id,
                result.confidence,
                now=now,
            )
        else:
            self.store.resolve_request(request.id, "skipped", now=now)
        return self._finish(result)

    # ── Internals ──────────────────────────────────────────────────

    def _request(self) -> IdentificationRequest:
        if self.state.finished or self.state.current is None:
            raise ValidationError("Workflow has no request in progress")
        return self.state.current.request

    def _require_skippable(self, action: str):
        self._request()
        if not self.current_step.can_skip:
            raise ValidationError(f"Cannot {action} during the {self.current_step.id} step")

    def _finish(self, result: IdentificationResult) -> IdentificationResult:
        request = self.state.current.request
        if self.ledger is not None:
            self.ledger.record(HistoryEntry(
                id=f"hist_{uuid.uuid4().hex[:12]}",
                timestamp=self.clock(),
                action=result.action,
                request_id=request.id,
                speaker_label=request.speaker_label,
                meeting_title=request.meeting_title,
                meeting_date=request.meeting_date,
                method=result.method,
                user_id=result.user_id,
                user_name=result.user_name,
                confidence=result.confidence,
                undoable=result.action == "identified",
            ))
        self.state.results.append(result)
        log.info("Request %s -> %s", request.id, result.action)

        if self.state.index < len(self.requests) - 1:
            self.state.index += 1
            self.load()
        else:
            self.state.current = None
            self.state.finished = True
        return result
