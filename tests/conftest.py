"""Shared fixtures: every store lives under a pytest tmp_path."""

import json

import pytest

from loginpilot.core.config import Settings
from loginpilot.learning.engine import RuleEngine
from loginpilot.learning.session import HistoryStore, SessionTracker
from loginpilot.rules.store import RuleStore
from loginpilot.service import LoginPilot

BUNDLED = {
    "version": "1.0",
    "generalRules": {"avoidSocialLogin": True},
    "sites": {
        "github.com": {
            "name": "GitHub",
            "loginUrl": "https://github.com/login",
            "flowType": "single-page",
            "steps": [
                {"action": "fill_credentials", "nextButton": "Sign in"},
                {"action": "fill_2fa", "source": "totp", "nextButton": "Verify"},
            ],
        },
        "google.com": {
            "name": "Google",
            "loginUrl": "https://accounts.google.com/signin",
            "flowType": "multi-step",
            "steps": [
                {"action": "fill_username", "nextButton": "Next"},
                {"action": "fill_password", "nextButton": "Next"},
            ],
        },
    },
}


@pytest.fixture
def bundled_file(tmp_path):
    path = tmp_path / "site-rules.json"
    path.write_text(json.dumps(BUNDLED))
    return path


@pytest.fixture
def settings(tmp_path, bundled_file):
    return Settings(data_dir=tmp_path / "data", bundled_rules_file=bundled_file)


@pytest.fixture
def history_store(settings):
    return HistoryStore(settings.history_file, settings.max_history)


@pytest.fixture
def tracker(history_store):
    return SessionTracker(history_store)


@pytest.fixture
def rule_store(settings):
    return RuleStore.from_settings(settings)


@pytest.fixture
def engine(rule_store):
    return RuleEngine(rule_store)


@pytest.fixture
def pilot(settings):
    return LoginPilot(settings)


@pytest.fixture
def learner(history_store, engine):
    """A tracker whose completed attempts are fed to the rule engine."""
    return SessionTracker(history_store, on_complete=engine.learn_from_attempt)


@pytest.fixture
def run_attempt(learner):
    """Record a whole attempt: ``steps`` are (action, result, params, details) tuples."""
    def _run(domain, outcome, steps, error_message=None, login_url=None):
        learner.start_attempt(domain, login_url)
        for action, result, params, details in steps:
            learner.log_step(action, result, params, details)
        return learner.complete_attempt(outcome, error_message=error_message)
    return _run
