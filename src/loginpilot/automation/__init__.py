"""Automation seam: the executor protocol and the results it reports.

Page automation itself happens in an external executor (for example a
browser extension); LoginPilot only records what it reports.
"""

from .engine import AutomationExecutor
from .types import ClickResult, CommandResult, FillResult

__all__ = [
    'AutomationExecutor',
    'ClickResult',
    'CommandResult',
    'FillResult',
]
