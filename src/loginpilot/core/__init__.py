"""Core data model, configuration and persistence for loginpilot."""

from .config import Settings
from .models import (
    Attempt,
    FlowType,
    GeneralRules,
    History,
    LearningNote,
    NoteType,
    Outcome,
    Provenance,
    Rule,
    RuleAction,
    RuleSet,
    Step,
    StepAction,
    StepResult,
    StepRule,
    TwoFactorSource,
)
from .storage import StoreError

__all__ = [
    'Attempt',
    'FlowType',
    'GeneralRules',
    'History',
    'LearningNote',
    'NoteType',
    'Outcome',
    'Provenance',
    'Rule',
    'RuleAction',
    'RuleSet',
    'Settings',
    'Step',
    'StepAction',
    'StepResult',
    'StepRule',
    'StoreError',
    'TwoFactorSource',
]
