"""Rule Engine: mutates per-domain rules from the outcome of each login attempt."""
import logging
from typing import Any, Dict, List, Optional

from ..core.config import MAX_LEARNING_NOTES
from ..core.models import (
    Attempt,
    FlowType,
    LearningNote,
    NoteType,
    Outcome,
    Provenance,
    Rule,
    RuleAction,
    Step,
    StepAction,
    StepResult,
    StepRule,
    TwoFactorSource,
    utcnow,
)
from ..rules.store import RuleStore

logger = logging.getLogger(__name__)

SEED_SUCCESS_CONFIDENCE = 0.5
SEED_FAILURE_CONFIDENCE = 0.1
PROMOTION_SUCCESS_COUNT = 2
ADAPT_AFTER_FAILURES = 2
CONTRIBUTE_MIN_SUCCESSES = 3
CONTRIBUTE_MIN_CONFIDENCE = 0.8

TWO_FACTOR_CYCLE = [TwoFactorSource.SMS, TwoFactorSource.EMAIL, TwoFactorSource.TOTP]

_STEP_TO_RULE_ACTION = {
    StepAction.CLICK_BUTTON: RuleAction.CLICK_BUTTON,
    StepAction.FILL_TOTP: RuleAction.FILL_2FA,
    StepAction.GET_2FA_CODE: RuleAction.FILL_2FA,
    StepAction.WAIT: RuleAction.WAIT,
}


def filled_fields(details: Optional[str]) -> Dict[str, bool]:
    """Which credential fields a fill_credentials step reports it filled."""
    text = (details or "").lower()
    return {"username": "username" in text, "password": "password" in text}


def fill_rule_action(step: Step) -> RuleAction:
    fields = filled_fields(step.details)
    if fields["username"] and not fields["password"]:
        return RuleAction.FILL_USERNAME
    if fields["password"] and not fields["username"]:
        return RuleAction.FILL_PASSWORD
    return RuleAction.FILL_CREDENTIALS


def _wait_ms(step: Step) -> Optional[int]:
    duration = step.params.get("duration")
    if isinstance(duration, (int, float)) and not isinstance(duration, bool):
        return int(duration * 1000)
    return None


class RuleEngine:
    """Learns per-domain login rules from completed attempts."""

    def __init__(self, store: RuleStore, max_notes: int = MAX_LEARNING_NOTES):
        self.store = store
        self.max_notes = max_notes

    # ---- Notes ----
    def add_learning_note(
        self,
        rule: Rule,
        note_type: NoteType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        rule.learning_notes.append(LearningNote(note_type, message, details=details))
        if len(rule.learning_notes) > self.max_notes:
            rule.learning_notes = rule.learning_notes[-self.max_notes:]

    def _adapt(self, rule: Rule, adaptation: str) -> None:
        rule.adaptations.append(adaptation)
        self.add_learning_note(rule, NoteType.ADAPTATION, adaptation)
        logger.info(f"[{rule.domain}] {adaptation}")

    # ---- Entry point ----
    def learn_from_attempt(self, attempt: Attempt) -> Optional[Rule]:
        """Update (or create) the rule for the attempt's domain.

        The rule is re-read and saved under the local rules lock, so learning
        done by another process for the same domain is built upon.

        Returns:
            The rule that was created or changed, or None if the outcome
            carries nothing to learn.
        """
        if attempt.outcome in (Outcome.ABANDONED, Outcome.IN_PROGRESS):
            return None
        return self.store.update(attempt.domain, lambda rule: self._learn(rule, attempt))

    def _learn(self, rule: Optional[Rule], attempt: Attempt) -> Optional[Rule]:
        if attempt.outcome == Outcome.SUCCESS:
            if rule is None:
                rule = self.create_rule_from_attempt(attempt)
                self.store.put_rule(rule)
                logger.info(f"Learned new rule for {attempt.domain}")
            else:
                self._learn_from_success(rule, attempt)
        elif attempt.outcome == Outcome.FAILED:
            if rule is None:
                rule = self.create_rule_from_attempt(attempt)
                self.store.put_rule(rule)
                logger.info(f"Created tentative rule for {attempt.domain} from a failed attempt")
            else:
                self._learn_from_failure(rule, attempt)
        elif attempt.outcome == Outcome.PENDING_2FA and rule is not None:
            self.add_learning_note(
                rule, NoteType.HYPOTHESIS,
                "Login reached 2FA stage but code wasn't found automatically. May need different 2FA source.",
                {"attemptedSource": attempt.two_factor_source.value if attempt.two_factor_source else None},
            )
            if rule.two_factor_source in (None, TwoFactorSource.NONE):
                rule.two_factor_source = TwoFactorSource.SMS
                self._adapt(rule, "Set 2FA source to SMS as a hypothesis - will try email if this fails")
        elif attempt.outcome == Outcome.ALREADY_LOGGED_IN and rule is not None:
            self.add_learning_note(rule, NoteType.SUCCESS, "User was already logged in when attempting login")
        else:
            return None

        rule.last_updated = utcnow()
        self.store.mark_dirty(rule)
        return rule

    # ---- Success ----
    def _learn_from_success(self, rule: Rule, attempt: Attempt) -> None:
        rule.success_count += 1
        rule.consecutive_failures = 0
        rule.recompute_confidence()

        for step in attempt.steps_of(StepAction.CLICK_BUTTON):
            text = step.button_text
            if step.result == StepResult.SUCCESS and text and text not in rule.alternative_button_texts:
                rule.alternative_button_texts.append(text)
                self.add_learning_note(rule, NoteType.SUCCESS, f'Learned that button "{text}" works for this site')

        tfa = next(
            (s for s in attempt.steps_of(StepAction.GET_2FA_CODE) if s.result == StepResult.SUCCESS),
            None,
        )
        if tfa is not None and tfa.details:
            rule.two_factor_sender = tfa.details
            self.add_learning_note(rule, NoteType.SUCCESS, f"Learned 2FA codes come from: {tfa.details}")

        if attempt.flow_type and attempt.flow_type != rule.flow_type:
            rule.flow_type = attempt.flow_type
            self.add_learning_note(
                rule, NoteType.ADAPTATION,
                f'Updated flow type from observation: now "{attempt.flow_type.value}"',
            )

        self.add_learning_note(
            rule, NoteType.SUCCESS,
            f"Login succeeded with {len(attempt.steps)} steps",
            {"username": attempt.username, "stepCount": len(attempt.steps)},
        )

        if rule.provenance == Provenance.BUNDLED and rule.success_count >= PROMOTION_SUCCESS_COUNT:
            rule.provenance = Provenance.LOCAL
            self.add_learning_note(
                rule, NoteType.ADAPTATION,
                "Promoted from bundled to locally-verified rule after multiple successes",
            )
            logger.info(f"Promoted bundled rule for {rule.domain} to local")

    # ---- Failure ----
    def _learn_from_failure(self, rule: Rule, attempt: Attempt) -> None:
        rule.failure_count += 1
        rule.consecutive_failures += 1
        rule.recompute_confidence()
        rule.last_failure_reason = attempt.error_message

        failed = [s for s in attempt.steps if s.result == StepResult.FAILED]
        partial = [s for s in attempt.steps if s.result == StepResult.PARTIAL]
        first = failed[0] if failed else (partial[0] if partial else None)

        if first is None:
            self.add_learning_note(
                rule, NoteType.FAILURE,
                f"Login failed but no specific step failure identified: {attempt.error_message or 'Unknown'}",
                {"totalSteps": len(attempt.steps)},
            )
        elif first.action == StepAction.FILL_CREDENTIALS:
            self._handle_credential_fill_failure(rule, attempt, first)
        elif first.action == StepAction.CLICK_BUTTON:
            self._handle_button_click_failure(rule, attempt, first)
        elif first.action in (StepAction.FILL_TOTP, StepAction.GET_2FA_CODE):
            self._handle_2fa_failure(rule, first)
        else:
            self.add_learning_note(
                rule, NoteType.FAILURE,
                f'Step "{first.action.value}" failed: {first.details or "Unknown reason"}',
                {"step": first.to_dict()},
            )

    def _handle_credential_fill_failure(self, rule: Rule, attempt: Attempt, step: Step) -> None:
        details = (step.details or "").lower()
        fields = filled_fields(details)

        if "none" in details or "no fields" in details:
            self.add_learning_note(
                rule, NoteType.FAILURE,
                "Could not find credential fields on page. The login page may have changed.",
                {"loginUrl": attempt.login_url, "ruleLoginUrl": rule.login_url},
            )
            if attempt.login_url and attempt.login_url != rule.login_url:
                adaptation = f'Updated login URL from "{rule.login_url}" to "{attempt.login_url}"'
                rule.login_url = attempt.login_url
                self._adapt(rule, adaptation)
        elif fields["username"] and not fields["password"]:
            if rule.flow_type == FlowType.SINGLE_PAGE:
                rule.flow_type = FlowType.MULTI_STEP
                self._adapt(rule, "Changed flow type to multi-step (only username field was found)")
        elif fields["password"] and not fields["username"]:
            self.add_learning_note(
                rule, NoteType.HYPOTHESIS,
                "Only password field found - page may already be on step 2 of multi-step flow",
            )
        else:
            self.add_learning_note(
                rule, NoteType.FAILURE,
                f"Credential fill failed: {step.details or 'Unknown reason'}",
            )

    def _handle_button_click_failure(self, rule: Rule, attempt: Attempt, step: Step) -> None:
        attempted = step.button_text
        self.add_learning_note(
            rule, NoteType.FAILURE,
            f'Could not find or click button "{attempted}"',
            {"attemptedButton": attempted, "error": step.details},
        )

        alternatives = [b for b in rule.alternative_button_texts if b != attempted]
        if alternatives:
            self.add_learning_note(
                rule, NoteType.HYPOTHESIS,
                f"Will try alternative buttons on next attempt: {', '.join(alternatives)}",
            )

        if rule.consecutive_failures < ADAPT_AFTER_FAILURES or not attempted:
            return

        position = next(i for i, s in enumerate(attempt.steps) if s is step)
        working = next(
            (
                s for s in attempt.steps[position + 1:]
                if s.action == StepAction.CLICK_BUTTON
                and s.result == StepResult.SUCCESS
                and s.button_text
                and s.button_text != attempted
            ),
            None,
        )
        if working is None:
            return
        target = next(
            (sr for sr in rule.steps if sr.action == RuleAction.CLICK_BUTTON and sr.button_text == attempted),
            None,
        )
        if target is None:
            return
        target.button_text = working.button_text
        self._adapt(
            rule,
            f'Changed button text from "{attempted}" to "{working.button_text}" '
            f'after {rule.consecutive_failures} failures',
        )

    def _handle_2fa_failure(self, rule: Rule, step: Step) -> None:
        current = rule.two_factor_source.value if rule.two_factor_source else None
        source = step.params.get("source") or current
        self.add_learning_note(
            rule, NoteType.FAILURE,
            f"2FA code retrieval failed from {source}: {step.details or 'No code found'}",
            {"source": source, "sender": rule.two_factor_sender},
        )

        if rule.consecutive_failures < ADAPT_AFTER_FAILURES:
            return
        if rule.two_factor_source in TWO_FACTOR_CYCLE:
            index = TWO_FACTOR_CYCLE.index(rule.two_factor_source)
        else:
            index = -1
        next_source = TWO_FACTOR_CYCLE[(index + 1) % len(TWO_FACTOR_CYCLE)]
        adaptation = (
            f'Changing 2FA source from "{current}" to "{next_source.value}" '
            f"after {rule.consecutive_failures} failures"
        )
        rule.two_factor_source = next_source
        self._adapt(rule, adaptation)

    # ---- Synthesis ----
    def create_rule_from_attempt(self, attempt: Attempt) -> Rule:
        """Seed a local rule from the steps of an attempt that worked (or partly worked)."""
        steps: List[StepRule] = []
        for step in attempt.steps:
            if step.result not in (StepResult.SUCCESS, StepResult.PARTIAL):
                continue
            if step.action == StepAction.FILL_CREDENTIALS:
                action = fill_rule_action(step)
            else:
                action = _STEP_TO_RULE_ACTION.get(step.action)
                if action is None:
                    continue
            steps.append(StepRule(
                order=len(steps) + 1,
                action=action,
                button_text=step.button_text,
                wait_ms=_wait_ms(step) if step.action == StepAction.WAIT else None,
            ))

        succeeded = attempt.outcome == Outcome.SUCCESS
        failed = attempt.outcome == Outcome.FAILED
        rule = Rule(
            domain=attempt.domain,
            login_url=attempt.login_url,
            flow_type=attempt.flow_type or FlowType.SINGLE_PAGE,
            steps=steps,
            two_factor_source=attempt.two_factor_source,
            two_factor_sender=attempt.two_factor_sender,
            confidence=SEED_SUCCESS_CONFIDENCE if succeeded else SEED_FAILURE_CONFIDENCE,
            provenance=Provenance.LOCAL,
            success_count=1 if succeeded else 0,
            failure_count=1 if failed else 0,
            consecutive_failures=1 if failed else 0,
            last_failure_reason=attempt.error_message if failed else None,
        )
        self.add_learning_note(
            rule, NoteType.SUCCESS if succeeded else NoteType.FAILURE,
            f"Rule created from {attempt.outcome.value} login attempt",
            {
                "username": attempt.username,
                "stepCount": len(attempt.steps),
                "flowType": attempt.flow_type.value if attempt.flow_type else None,
                "twoFactorSource": attempt.two_factor_source.value if attempt.two_factor_source else None,
            },
        )
        return rule

    # ---- Queries ----
    def get_contributable_rules(self) -> List[Rule]:
        """Local rules stable enough to share with others."""
        return [
            rule for rule in self.store.all_rules()
            if rule.provenance == Provenance.LOCAL
            and rule.success_count >= CONTRIBUTE_MIN_SUCCESSES
            and rule.confidence >= CONTRIBUTE_MIN_CONFIDENCE
        ]

    def get_contributable_rule(self, domain: str) -> Optional[Rule]:
        return next((r for r in self.get_contributable_rules() if r.domain == domain), None)

    def button_candidates(self, domain: str) -> List[str]:
        """Button texts to try, most specific first, without case-insensitive duplicates."""
        rule = self.store.get_rule_for_domain(domain)
        candidates: List[str] = []
        if rule is not None:
            candidates.extend(s.button_text for s in rule.steps if s.button_text)
            candidates.extend(rule.alternative_button_texts)
        candidates.extend(self.store.general_rules.preferred_button_order)

        seen = set()
        ordered = []
        for text in candidates:
            key = text.strip().lower()
            if key and key not in seen:
                seen.add(key)
                ordered.append(text)
        return ordered
