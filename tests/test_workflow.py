"""Tests for speakersift.workflow.identification."""

from __future__ import annotations

import pytest

from speakersift.errors import PersistenceFailure, ValidationError
from speakersift.workflow.identification import IdentificationWorkflow, quality_score

from conftest import NOW, make_profile, make_request


def _workflow(store, ledger, requests, **kw):
    for r in requests:
        store.create_request(r)
    return IdentificationWorkflow(
        requests, store, ledger, user_id_factory=lambda: "user_new", clock=lambda: NOW, **kw
    )


def _to_confirm(workflow):
    while workflow.current_step.id != "confirm":
        workflow.next_step()


class TestSteps:
    def test_steps_with_comparison(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        assert [s.id for s in wf.steps] == ["review", "compare", "identify", "confirm"]
        assert [s.can_skip for s in wf.steps] == [False, True, True, False]

    def test_steps_without_comparison(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()], show_voice_comparison=False)
        assert [s.id for s in wf.steps] == ["review", "identify", "confirm"]

    def test_navigation_clamps(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        assert wf.previous_step().id == "review"
        for _ in range(10):
            wf.next_step()
        assert wf.current_step.id == "confirm"

    def test_quality_score(self):
        assert quality_score(0, 0) == 0.5
        assert quality_score(2, 1) == pytest.approx(0.8)
        assert quality_score(5, 5) == 1.0


class TestLoading:
    def test_high_confidence_suggestion_preselected(self, store, ledger):
        store.save_profile(make_profile("known", user_id="u_dana", display_name="Dana",
                                        confirmed=True, confidence=0.9))
        wf = _workflow(store, ledger, [make_request()])
        assert wf.state.method == "suggested"
        assert wf.state.selected_suggestion.user_id == "u_dana"
        assert wf.state.confidence == 0.9

    def test_low_confidence_suggestion_not_preselected(self, store, ledger):
        store.save_profile(make_profile("known", user_id="u_dana", display_name="Dana",
                                        confirmed=True, confidence=0.6))
        wf = _workflow(store, ledger, [make_request()])
        assert len(wf.current.suggestions) == 1
        assert wf.state.method == "manual"
        assert wf.state.confidence == 0.8

    def test_comparison_profiles_exclude_own_voice(self, store, ledger):
        store.save_profile(make_profile("v_unknown", samples=2))
        store.save_profile(make_profile("other"))
        wf = _workflow(store, ledger, [make_request(voice_id="v_unknown")])
        assert [p.voice_id for p in wf.current.available_profiles] == ["other"]
        assert len(wf.current.voice_samples) == 2
        assert wf.current.quality_score == pytest.approx(0.9)


class TestSubmit:
    def test_manual_identification(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        wf.set_manual_name("  Grace Hopper ")
        _to_confirm(wf)
        result = wf.submit()

        assert result.action == "identified"
        assert result.user_id == "user_new"
        assert result.user_name == "Grace Hopper"
        assert result.method == "manual"
        assert wf.finished

        profile = store.get_profile("v_unknown")
        assert profile.display_name == "Grace Hopper"
        assert profile.confirmed is True
        assert store.get_request("req_1").status == "identified"
        assert ledger.entries[0].undoable is True

    def test_blank_manual_name_becomes_skip(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        wf.set_manual_name("   ")
        _to_confirm(wf)
        result = wf.submit()
        assert result.action == "skipped"
        assert result.user_id is None
        assert store.get_request("req_1").status == "skipped"
        assert ledger.entries[0].undoable is False

    def test_matched_profile_without_identity_uses_derived_values(self, store, ledger):
        other = make_profile("other")
        store.save_profile(other)
        wf = _workflow(store, ledger, [make_request()])
        wf.select_profile(other)
        _to_confirm(wf)
        result = wf.submit()
        assert result.user_id == "user_other"
        assert result.user_name == "Unknown User"
        assert result.method == "matched"

    def test_matched_without_selection_becomes_skip(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        wf.set_method("matched")
        _to_confirm(wf)
        assert wf.submit().action == "skipped"

    def test_suggested_uses_suggestion_confidence(self, store, ledger):
        store.save_profile(make_profile("known", user_id="u_dana", display_name="Dana",
                                        confirmed=True, confidence=0.75))
        wf = _workflow(store, ledger, [make_request()])
        _to_confirm(wf)
        result = wf.submit()
        assert (result.method, result.user_id, result.confidence) == ("suggested", "u_dana", 0.75)

    def test_submit_only_on_confirm_step(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        wf.set_manual_name("Ann")
        with pytest.raises(ValidationError):
            wf.submit()

    def test_invalid_method_and_confidence(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        with pytest.raises(ValidationError):
            wf.set_method("guess")
        with pytest.raises(ValidationError):
            wf.set_confidence(1.2)


class TestSkipAndDefer:
    def test_skip_on_skippable_step(self, store, ledger):
        wf = _workflow(store, ledger, [make_request("r1"), make_request("r2", voice_id="v2")])
        wf.next_step()
        wf.set_manual_name("Typed but abandoned")
        result = wf.skip()
        assert result.action == "skipped"
        assert wf.current.request.id == "r2"
        assert wf.current_step.id == "review"
        assert wf.state.manual_name == ""

    def test_skip_rejected_on_review(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        with pytest.raises(ValidationError):
            wf.skip()

    def test_defer(self, store, ledger):
        wf = _workflow(store, ledger, [make_request()])
        wf.next_step()
        assert wf.defer().action == "deferred"
        assert store.get_request("req_1").status == "deferred"
        assert ledger.entries[0].action == "deferred"

    def test_one_result_per_request(self, store, ledger):
        requests = [make_request(f"r{i}", voice_id=f"v{i}") for i in range(3)]
        wf = _workflow(store, ledger, requests)
        wf.next_step()
        wf.skip()
        wf.set_manual_name("Ann")
        _to_confirm(wf)
        wf.submit()
        wf.next_step()
        wf.defer()

        assert [r.action for r in wf.results] == ["skipped", "identified", "deferred"]
        assert [r.request_id for r in wf.results] == ["r0", "r1", "r2"]
        assert wf.finished
        assert wf.progress == 1.0
        assert len(ledger) == 3
        with pytest.raises(ValidationError):
            wf.skip()

    def test_persistence_failure_does_not_advance(self, store, ledger, monkeypatch):
        wf = _workflow(store, ledger, [make_request("r1"), make_request("r2", voice_id="v2")])

        def boom(*args, **kwargs):
            raise PersistenceFailure("store offline")

        monkeypatch.setattr(store, "resolve_request", boom)
        wf.next_step()
        with pytest.raises(PersistenceFailure):
            wf.skip()
        assert wf.current.request.id == "r1"
        assert wf.results == []
        assert len(ledger) == 0

    def test_failed_ledger_write_records_no_result(self, store, ledger, monkeypatch):
        wf = _workflow(store, ledger, [make_request("r1"), make_request("r2", voice_id="v2")])
        insert = store.insert_history_entry
        calls = []

        def flaky_insert(entry):
            calls.append(entry.id)
            if len(calls) == 1:
                raise PersistenceFailure("store offline")
            insert(entry)

        monkeypatch.setattr(store, "insert_history_entry", flaky_insert)
        wf.next_step()
        with pytest.raises(PersistenceFailure):
            wf.skip()
        assert wf.results == []
        assert wf.current.request.id == "r1"

        wf.skip()
        assert [(r.request_id, r.action) for r in wf.results] == [("r1", "skipped")]
        assert wf.current.request.id == "r2"
        assert len(ledger) == 1

    def test_empty_queue_is_finished(self, store, ledger):
        wf = IdentificationWorkflow([], store, ledger)
        assert wf.finished
        assert wf.current is None
