"""Learning layer: attempt tracking, rule adaptation and reporting."""

from .engine import RuleEngine
from .sanitize import sanitize_params
from .session import HistoryStore, SessionTracker

__all__ = [
    'HistoryStore',
    'RuleEngine',
    'SessionTracker',
    'sanitize_params',
]
