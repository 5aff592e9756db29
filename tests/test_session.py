"""Tests for the session tracker and the bounded attempt history."""

import json

import pytest

from loginpilot.core.models import FlowType, Outcome, StepAction, StepResult, TwoFactorSource
from loginpilot.learning.sanitize import REDACTED
from loginpilot.learning.session import HistoryStore, SessionTracker, generate_attempt_id


class TestAttemptLifecycle:
    def test_start_returns_id_and_activates(self, tracker):
        attempt_id = tracker.start_attempt("example.com", "https://example.com/login")
        assert attempt_id.startswith("login_")
        assert tracker.current_attempt.id == attempt_id
        assert tracker.current_attempt.outcome == Outcome.IN_PROGRESS

    def test_login_url_defaults_to_domain(self, tracker):
        tracker.start_attempt("example.com")
        assert tracker.current_attempt.login_url == "https://example.com"

    def test_ids_are_unique(self):
        assert len({generate_attempt_id() for _ in range(50)}) == 50

    def test_log_step_without_attempt(self, tracker):
        assert tracker.log_step(StepAction.CLICK_BUTTON, StepResult.SUCCESS) is False

    def test_complete_without_attempt(self, tracker):
        assert tracker.complete_attempt(Outcome.SUCCESS) is None

    def test_set_user_info_without_attempt(self, tracker):
        assert tracker.set_user_info("alice") is False

    def test_complete_in_progress_rejected(self, tracker):
        tracker.start_attempt("example.com")
        with pytest.raises(ValueError):
            tracker.complete_attempt(Outcome.IN_PROGRESS)
        assert tracker.current_attempt is not None

    def test_complete_seals_and_clears(self, tracker):
        tracker.start_attempt("example.com")
        tracker.log_step("click_button", "success", {"buttonText": "Sign in"}, "Sign in")
        attempt = tracker.complete_attempt("success", final_state="Dashboard")
        assert tracker.current_attempt is None
        assert attempt.outcome == Outcome.SUCCESS
        assert attempt.completed_at >= attempt.started_at
        assert attempt.step_count == 1
        assert attempt.final_state == "Dashboard"
        assert tracker.history.attempts[-1].id == attempt.id

    def test_params_are_sanitized(self, tracker):
        tracker.start_attempt("example.com")
        tracker.log_step(StepAction.FILL_TOTP, StepResult.SUCCESS, {"code": "123456", "item_id": "abc"})
        step = tracker.current_attempt.steps[0]
        assert step.params == {"code": REDACTED, "item_id": "abc"}

    def test_set_user_info(self, tracker):
        tracker.start_attempt("example.com")
        assert tracker.set_user_info("alice", "Example") is True
        assert tracker.current_attempt.username == "alice"
        assert tracker.current_attempt.item_title == "Example"


class TestSingleActiveAttempt:
    def test_stale_attempt_with_steps_completes_as_success(self, tracker):
        tracker.start_attempt("a.com")
        tracker.log_step("click_button", "success", {"buttonText": "Next"}, "Next")
        tracker.start_attempt("b.com")
        previous = tracker.history.attempts[-1]
        assert previous.domain == "a.com"
        assert previous.outcome == Outcome.SUCCESS
        assert "Auto-completed" in previous.final_state
        assert tracker.current_attempt.domain == "b.com"

    def test_stale_attempt_without_steps_is_abandoned(self, tracker):
        tracker.start_attempt("a.com")
        tracker.start_attempt("b.com")
        previous = tracker.history.attempts[-1]
        assert previous.outcome == Outcome.ABANDONED
        assert "Abandoned" in previous.final_state

    def test_listener_sees_auto_completed_attempt(self, history_store):
        seen = []
        tracker = SessionTracker(history_store, on_complete=seen.append)
        tracker.start_attempt("a.com")
        tracker.start_attempt("b.com")
        assert [a.domain for a in seen] == ["a.com"]

    def test_never_more_than_one_in_progress(self, tracker):
        for domain in ("a.com", "b.com", "c.com"):
            tracker.start_attempt(domain)
        in_progress = [a for a in tracker.history.attempts if a.outcome == Outcome.IN_PROGRESS]
        assert in_progress == []
        assert tracker.current_attempt.domain == "c.com"


class TestDerivation:
    def _complete(self, tracker, steps):
        tracker.start_attempt("example.com")
        for action, result, params, details in steps:
            tracker.log_step(action, result, params, details)
        return tracker.complete_attempt(Outcome.SUCCESS)

    def test_single_page(self, tracker):
        attempt = self._complete(tracker, [
            ("fill_credentials", "success", {}, "Filled: username, password"),
            ("click_button", "success", {"buttonText": "Sign in"}, "Sign in"),
        ])
        assert attempt.flow_type == FlowType.SINGLE_PAGE
        assert attempt.two_factor_source == TwoFactorSource.NONE
        assert attempt.two_factor_sender is None

    def test_next_button_means_multi_step(self, tracker):
        attempt = self._complete(tracker, [
            ("fill_credentials", "partial", {}, "Filled: username"),
            ("click_button", "success", {"buttonText": "NEXT"}, "Next"),
        ])
        assert attempt.flow_type == FlowType.MULTI_STEP

    def test_two_fills_mean_multi_step(self, tracker):
        attempt = self._complete(tracker, [
            ("fill_credentials", "partial", {}, "Filled: username"),
            ("fill_credentials", "partial", {}, "Filled: password"),
        ])
        assert attempt.flow_type == FlowType.MULTI_STEP

    @pytest.mark.parametrize("source,expected", [
        ("messages", TwoFactorSource.SMS),
        ("gmail", TwoFactorSource.EMAIL),
        ("authenticator", TwoFactorSource.TOTP),
    ])
    def test_two_factor_from_code_source(self, tracker, source, expected):
        attempt = self._complete(tracker, [
            ("get_2fa_code", "success", {"source": source}, "12345"),
        ])
        assert attempt.two_factor_source == expected
        assert attempt.two_factor_sender == "12345"

    def test_fill_totp_means_totp(self, tracker):
        attempt = self._complete(tracker, [("fill_totp", "success", {}, None)])
        assert attempt.two_factor_source == TwoFactorSource.TOTP


class TestHistoryStore:
    def test_persists_and_reloads(self, tracker, settings):
        tracker.start_attempt("example.com")
        tracker.log_step("click_button", "success", {"buttonText": "Go"}, "Go")
        tracker.complete_attempt("success")

        reloaded = HistoryStore(settings.history_file)
        assert len(reloaded.attempts) == 1
        assert reloaded.attempts[0].domain == "example.com"
        assert reloaded.attempts[0].steps[0].button_text == "Go"

        data = json.loads(settings.history_file.read_text())
        assert data["version"] == "1.0"
        assert data["attempts"][0]["outcome"] == "success"

    def test_cap_evicts_oldest(self, tmp_path):
        tracker = SessionTracker(HistoryStore(tmp_path / "history.json", max_entries=3))
        for i in range(5):
            tracker.start_attempt(f"site{i}.com")
            tracker.complete_attempt("failed")
        domains = [a.domain for a in tracker.history.attempts]
        assert domains == ["site2.com", "site3.com", "site4.com"]
        assert len(HistoryStore(tmp_path / "history.json").attempts) == 3

    def test_corrupt_history_degrades_to_empty(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("not json at all")
        store = HistoryStore(path)
        assert store.attempts == []

    def test_keeps_attempts_written_by_another_process(self, tmp_path):
        path = tmp_path / "history.json"
        first = SessionTracker(HistoryStore(path))
        second = SessionTracker(HistoryStore(path))

        first.start_attempt("a.com")
        first.complete_attempt("failed")
        second.start_attempt("b.com")
        second.complete_attempt("failed")

        assert {a.domain for a in HistoryStore(path).attempts} == {"a.com", "b.com"}

    def test_malformed_attempt_is_skipped_not_fatal(self, tmp_path):
        path = tmp_path / "history.json"
        tracker = SessionTracker(HistoryStore(path))
        for _ in range(3):
            tracker.start_attempt("a.com")
            tracker.complete_attempt("failed")

        data = json.loads(path.read_text())
        data["attempts"].append({"id": "broken", "domain": "a.com", "outcome": "weird"})
        data["attempts"].append("not an attempt")
        path.write_text(json.dumps(data))

        assert len(HistoryStore(path).attempts) == 3

        later = SessionTracker(HistoryStore(path))
        later.start_attempt("b.com")
        later.complete_attempt("success")
        domains = [a.domain for a in HistoryStore(path).attempts]
        assert domains == ["a.com", "a.com", "a.com", "b.com"]

    def test_attempts_of_wrong_type_load_empty(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(json.dumps({"attempts": {"a": 1}, "lastUpdated": 7}))
        assert HistoryStore(path).attempts == []

    def test_unreadable_file_is_moved_aside(self, tmp_path):
        path = tmp_path / "history.json"
        tracker = SessionTracker(HistoryStore(path))
        path.write_text("{truncated")
        tracker.start_attempt("a.com")
        tracker.complete_attempt("failed")

        backups = list(tmp_path.glob("history.json.corrupt-*"))
        assert [b.read_text() for b in backups] == ["{truncated"]
        assert [a.domain for a in HistoryStore(path).attempts] == ["a.com"]

    def test_file_lists_newest_first(self, tracker, settings):
        for domain in ("a.com", "b.com", "c.com"):
            tracker.start_attempt(domain)
            tracker.complete_attempt("failed")

        data = json.loads(settings.history_file.read_text())
        assert [a["domain"] for a in data["attempts"]] == ["c.com", "b.com", "a.com"]
        reloaded = HistoryStore(settings.history_file)
        assert [a.domain for a in reloaded.attempts] == ["a.com", "b.com", "c.com"]

    def test_clear_history(self, tracker, settings):
        tracker.start_attempt("example.com")
        tracker.complete_attempt("failed")
        assert tracker.clear_history() is True
        assert HistoryStore(settings.history_file).attempts == []


class TestQueries:
    def test_recent_is_newest_first(self, tracker):
        for domain in ("a.com", "b.com", "a.com"):
            tracker.start_attempt(domain)
            tracker.complete_attempt("failed")
        assert [a.domain for a in tracker.recent(2)] == ["a.com", "b.com"]
        assert len(tracker.recent(10, domain="a.com")) == 2

    def test_successful_attempts(self, tracker):
        tracker.start_attempt("a.com")
        tracker.complete_attempt("failed")
        tracker.start_attempt("a.com")
        tracker.complete_attempt("success")
        assert len(tracker.attempts_for_domain("a.com")) == 2
        assert [a.outcome for a in tracker.successful_attempts("a.com")] == [Outcome.SUCCESS]
