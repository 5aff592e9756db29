"""Reports over the attempt history and the learned rules."""
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from ..core.models import Attempt, Outcome, Provenance, Rule, StepAction, StepResult, TwoFactorSource
from ..rules.store import RuleStore
from .engine import RuleEngine
from .session import SessionTracker

MIN_PATTERN_SUCCESSES = 2


def _percent(value: float, digits: int = 1) -> str:
    return f"{value * 100:.{digits}f}%"


def history_stats(attempts: Sequence[Attempt]) -> Dict[str, Any]:
    """Aggregate success rate and flow shape over completed attempts."""
    completed = [a for a in attempts if a.outcome != Outcome.IN_PROGRESS]
    successful = [a for a in completed if a.outcome == Outcome.SUCCESS]
    flows = Counter(a.flow_type.value for a in completed if a.flow_type)
    most_common = flows.most_common(1)
    return {
        "totalAttempts": len(completed),
        "successRate": len(successful) / len(completed) if completed else 0.0,
        "uniqueDomains": len({a.domain for a in attempts}),
        "mostCommonFlowType": most_common[0][0] if most_common else "unknown",
    }


def domain_report(tracker: SessionTracker, store: RuleStore, domain: str) -> Dict[str, Any]:
    attempts = tracker.attempts_for_domain(domain)
    rule = store.get_rule_for_domain(domain)
    return {
        "domain": domain,
        "attempts": len(attempts),
        "successful": sum(1 for a in attempts if a.outcome == Outcome.SUCCESS),
        "failed": sum(1 for a in attempts if a.outcome == Outcome.FAILED),
        "rule": {
            "flowType": rule.flow_type.value,
            "steps": len(rule.steps),
            "twoFactorSource": rule.two_factor_source.value if rule.two_factor_source else None,
            "confidence": rule.confidence,
            "provenance": rule.provenance.value,
            "successCount": rule.success_count,
        } if rule else None,
        "recentAttempts": [
            {
                "outcome": a.outcome.value,
                "startedAt": a.started_at.isoformat(),
                "stepCount": len(a.steps),
            }
            for a in tracker.recent(5, domain=domain)
        ],
    }


def overall_report(tracker: SessionTracker, engine: RuleEngine) -> Dict[str, Any]:
    stats = history_stats(tracker.history.attempts)
    rules = engine.store.all_rules()
    local = [r for r in rules if r.provenance == Provenance.LOCAL]
    bundled = [r for r in rules if r.provenance == Provenance.BUNDLED]
    contributable = engine.get_contributable_rules()

    if contributable:
        tip = (
            f"You have {len(contributable)} rules ready to share! "
            "Run 'loginpilot rules export FILE' to contribute them."
        )
    else:
        tip = "Keep logging in to build up patterns for community contribution!"

    return {
        "overall": {
            "totalAttempts": stats["totalAttempts"],
            "successRate": _percent(stats["successRate"]),
            "uniqueSites": stats["uniqueDomains"],
            "mostCommonFlowType": stats["mostCommonFlowType"],
        },
        "rules": {
            "total": len(rules),
            "bundled": len(bundled),
            "locallyLearned": len(local),
            "readyToContribute": len(contributable),
        },
        "learnedSites": [
            {
                "domain": r.domain,
                "confidence": _percent(r.confidence, 0),
                "successCount": r.success_count,
                "flowType": r.flow_type.value,
            }
            for r in local
        ],
        "recentAttempts": [
            {"domain": a.domain, "outcome": a.outcome.value, "startedAt": a.started_at.isoformat()}
            for a in tracker.recent(10)
        ],
        "contributionTip": tip,
    }


def _pattern_key(attempt: Attempt) -> str:
    return "|".join(f"{s.action.value}:{s.button_text or ''}" for s in attempt.steps)


def export_patterns_for_contribution(attempts: Sequence[Attempt]) -> List[Dict[str, Any]]:
    """Most common successful step pattern for each domain with repeat successes.

    Only action names, button texts and results are exported; no params,
    details or usernames.
    """
    by_domain: Dict[str, List[Attempt]] = {}
    for attempt in attempts:
        if attempt.outcome == Outcome.SUCCESS:
            by_domain.setdefault(attempt.domain, []).append(attempt)

    patterns = []
    for domain, successes in by_domain.items():
        if len(successes) < MIN_PATTERN_SUCCESSES:
            continue
        key, count = Counter(_pattern_key(a) for a in successes).most_common(1)[0]
        representative = next(a for a in successes if _pattern_key(a) == key)
        patterns.append({
            "domain": domain,
            "loginUrl": representative.login_url,
            "flowType": representative.flow_type.value if representative.flow_type else None,
            "stepCount": representative.step_count,
            "twoFactorSource": (
                representative.two_factor_source.value if representative.two_factor_source else None
            ),
            "twoFactorSender": representative.two_factor_sender,
            "steps": [
                {"action": s.action.value, "buttonText": s.button_text, "result": s.result.value}
                for s in representative.steps
            ],
            "successCount": count,
            "totalAttempts": len(successes),
        })
    return patterns


def export_contributable_rules(engine: RuleEngine) -> List[Dict[str, Any]]:
    """Contributable rules as plain dicts, with learning-note details stripped."""
    exported = []
    for rule in engine.get_contributable_rules():
        data = rule.to_dict()
        for note in data["learningNotes"]:
            note.pop("details", None)
        exported.append(data)
    return exported


def _assisted_by(attempt: Attempt) -> List[str]:
    assisted: List[str] = []
    for step in attempt.steps:
        if step.result not in (StepResult.SUCCESS, StepResult.PARTIAL):
            continue
        if step.action == StepAction.FILL_CREDENTIALS:
            details = step.details or ""
            if "username" in details:
                assisted.append("Username")
            if "password" in details:
                assisted.append("Password")
            if not details or details == "none":
                assisted.append("Credentials")
        elif step.action in (StepAction.FILL_TOTP, StepAction.GET_2FA_CODE):
            assisted.append("2FA Code")
        elif step.action == StepAction.CLICK_BUTTON:
            assisted.append("Navigation")
    return list(dict.fromkeys(assisted))


def active_sessions(attempts: Sequence[Attempt]) -> List[Dict[str, Any]]:
    """Most recent successful login per domain, newest first."""
    latest: Dict[str, Attempt] = {}
    for attempt in reversed(list(attempts)):
        if attempt.outcome == Outcome.SUCCESS and attempt.domain not in latest:
            latest[attempt.domain] = attempt

    sessions = []
    for attempt in latest.values():
        logged_in_at = attempt.completed_at or attempt.started_at
        sessions.append({
            "domain": attempt.domain,
            "loginUrl": attempt.login_url,
            "loggedInAt": logged_in_at.isoformat(),
            "assistedBy": _assisted_by(attempt),
            "twoFactorUsed": attempt.two_factor_source not in (None, TwoFactorSource.NONE),
            "attemptId": attempt.id,
        })
    return sessions


def rule_summary(rule: Optional[Rule]) -> Optional[Dict[str, Any]]:
    """Short description of a rule for session start-up."""
    if rule is None:
        return None
    return {
        "domain": rule.domain,
        "flowType": rule.flow_type.value,
        "twoFactorSource": rule.two_factor_source.value if rule.two_factor_source else None,
        "twoFactorSender": rule.two_factor_sender,
        "confidence": rule.confidence,
        "provenance": rule.provenance.value,
        "steps": [s.to_dict() for s in rule.steps],
    }
