"""Layering of rule provenance tiers.

Everything here is pure: no file access, so the precedence between bundled,
local and community rules can be exercised directly.
"""
from typing import Any, Dict, Iterable, List, Optional

from ..core.models import (
    GeneralRules,
    LearningNote,
    NoteType,
    Provenance,
    Rule,
    RuleAction,
    RuleSet,
    FlowType,
    StepRule,
    TwoFactorSource,
)

BUNDLED_CONFIDENCE = 0.7

_BUNDLED_ACTIONS = {a.value for a in (
    RuleAction.FILL_USERNAME,
    RuleAction.FILL_PASSWORD,
    RuleAction.FILL_CREDENTIALS,
    RuleAction.FILL_2FA,
)}


def _bundled_two_factor(steps: List[Dict[str, Any]]) -> TwoFactorSource:
    tfa = next((s for s in steps if s.get("action") == RuleAction.FILL_2FA.value), None)
    if not tfa:
        return TwoFactorSource.NONE
    try:
        source = TwoFactorSource(tfa.get("source"))
    except ValueError:
        return TwoFactorSource.NONE
    return source


def convert_bundled_rule(domain: str, data: Dict[str, Any]) -> Rule:
    """Build a Rule from an entry of the bundled site-rules file."""
    bundled_steps = data.get("steps") or []
    steps = []
    for i, step in enumerate(bundled_steps):
        action = step.get("action")
        steps.append(StepRule(
            order=i + 1,
            action=RuleAction(action) if action in _BUNDLED_ACTIONS else RuleAction.FILL_CREDENTIALS,
            button_text=step.get("nextButton"),
        ))
    return Rule(
        domain=domain,
        name=data.get("name"),
        login_url=data.get("loginUrl") or "",
        flow_type=FlowType(data.get("flowType") or FlowType.SINGLE_PAGE.value),
        steps=steps,
        two_factor_source=_bundled_two_factor(bundled_steps),
        confidence=BUNDLED_CONFIDENCE,
        provenance=Provenance.BUNDLED,
        learning_notes=[LearningNote(NoteType.SUCCESS, "Bundled rule loaded from the shipped rule set")],
    )


def community_applies(existing: Optional[Rule], incoming: Rule) -> bool:
    """A community rule fills gaps, or beats a local rule of strictly lower confidence."""
    if existing is None or existing.provenance != Provenance.LOCAL:
        return True
    return existing.confidence < incoming.confidence


def merge_layers(
    bundled: Optional[Dict[str, Rule]] = None,
    local: Optional[Dict[str, Rule]] = None,
    community: Optional[Iterable[Rule]] = None,
    general_rules: Optional[Dict[str, Any]] = None,
) -> RuleSet:
    """Merge the provenance layers into one RuleSet.

    Order: default general rules (updated by ``general_rules``), then bundled
    rules, then local rules which replace bundled ones unconditionally, then
    community rules subject to :func:`community_applies`. No layer deletes a
    domain set by an earlier one.
    """
    rules = RuleSet(general_rules=GeneralRules().updated(general_rules))
    for domain, rule in (bundled or {}).items():
        rules.sites[domain] = rule
    for domain, rule in (local or {}).items():
        rules.sites[domain] = rule
    for rule in community or []:
        rule.provenance = Provenance.COMMUNITY
        if community_applies(rules.sites.get(rule.domain), rule):
            rules.sites[rule.domain] = rule
    return rules
