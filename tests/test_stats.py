"""Tests for history reports and contribution exports."""

from loginpilot.core.models import Outcome
from loginpilot.learning.stats import (
    active_sessions,
    domain_report,
    export_contributable_rules,
    export_patterns_for_contribution,
    history_stats,
    overall_report,
)

FILL_BOTH = ("fill_credentials", "success", {"item_id": "abc", "username": "alice"}, "Filled: username, password")
SIGN_IN = ("click_button", "success", {"buttonText": "Sign in"}, "Sign in")
NEXT = ("click_button", "success", {"buttonText": "Next"}, "Next")
TOTP = ("fill_totp", "success", {"item_id": "abc"}, None)


class TestHistoryStats:
    def test_empty(self):
        assert history_stats([]) == {
            "totalAttempts": 0,
            "successRate": 0.0,
            "uniqueDomains": 0,
            "mostCommonFlowType": "unknown",
        }

    def test_counts(self, run_attempt, learner):
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        run_attempt("a.com", Outcome.FAILED, [FILL_BOTH])
        run_attempt("b.com", Outcome.SUCCESS, [FILL_BOTH, NEXT])
        run_attempt("c.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        stats = history_stats(learner.history.attempts)
        assert stats["totalAttempts"] == 4
        assert stats["successRate"] == 0.75
        assert stats["uniqueDomains"] == 3
        assert stats["mostCommonFlowType"] == "single-page"


class TestReports:
    def test_domain_report(self, run_attempt, learner, rule_store):
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        run_attempt("a.com", Outcome.FAILED, [FILL_BOTH])
        report = domain_report(learner, rule_store, "a.com")
        assert (report["attempts"], report["successful"], report["failed"]) == (2, 1, 1)
        assert report["rule"]["provenance"] == "local"
        assert report["rule"]["steps"] == 2
        assert [a["outcome"] for a in report["recentAttempts"]] == ["failed", "success"]

    def test_domain_report_without_rule(self, learner, rule_store):
        report = domain_report(learner, rule_store, "nowhere.com")
        assert report["attempts"] == 0
        assert report["rule"] is None

    def test_overall_report(self, run_attempt, learner, engine):
        for _ in range(3):
            run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        report = overall_report(learner, engine)
        assert report["overall"]["successRate"] == "100.0%"
        assert report["rules"] == {"total": 3, "bundled": 2, "locallyLearned": 1, "readyToContribute": 1}
        assert report["learnedSites"] == [
            {"domain": "a.com", "confidence": "100%", "successCount": 3, "flowType": "single-page"},
        ]
        assert "ready to share" in report["contributionTip"]

    def test_overall_report_tip_without_contributions(self, learner, engine):
        report = overall_report(learner, engine)
        assert report["contributionTip"].startswith("Keep logging in")
        assert report["recentAttempts"] == []


class TestExports:
    def test_patterns_need_two_successes(self, run_attempt, learner):
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        assert export_patterns_for_contribution(learner.history.attempts) == []

    def test_most_common_pattern_without_secrets(self, run_attempt, learner):
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, NEXT])
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, NEXT])
        run_attempt("a.com", Outcome.FAILED, [FILL_BOTH, NEXT])
        [pattern] = export_patterns_for_contribution(learner.history.attempts)
        assert pattern["domain"] == "a.com"
        assert pattern["successCount"] == 2
        assert pattern["totalAttempts"] == 3
        assert pattern["flowType"] == "multi-step"
        assert pattern["steps"] == [
            {"action": "fill_credentials", "buttonText": None, "result": "success"},
            {"action": "click_button", "buttonText": "Next", "result": "success"},
        ]
        assert "alice" not in repr(pattern)

    def test_contributable_rules_strip_note_details(self, run_attempt, engine):
        for _ in range(3):
            run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        [exported] = export_contributable_rules(engine)
        assert exported["domain"] == "a.com"
        assert exported["learningNotes"]
        assert all("details" not in note for note in exported["learningNotes"])
        # the live rule keeps its note details
        assert any(n.details for n in engine.get_contributable_rule("a.com").learning_notes)


class TestActiveSessions:
    def test_latest_success_per_domain(self, run_attempt, learner):
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH, SIGN_IN])
        run_attempt("b.com", Outcome.SUCCESS, [FILL_BOTH, TOTP, NEXT])
        run_attempt("a.com", Outcome.SUCCESS, [FILL_BOTH])
        run_attempt("c.com", Outcome.FAILED, [FILL_BOTH])

        sessions = active_sessions(learner.history.attempts)
        assert [s["domain"] for s in sessions] == ["a.com", "b.com"]
        latest_a = learner.history.attempts[2]
        assert sessions[0]["attemptId"] == latest_a.id
        assert sessions[0]["assistedBy"] == ["Username", "Password"]
        assert sessions[0]["twoFactorUsed"] is False
        assert sessions[1]["assistedBy"] == ["Username", "Password", "2FA Code", "Navigation"]
        assert sessions[1]["twoFactorUsed"] is True
