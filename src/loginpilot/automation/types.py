from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CommandResult:
    success: bool
    error: Optional[str] = None


@dataclass
class FillResult:
    success: bool
    filled_fields: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class ClickResult:
    success: bool
    clicked: Optional[str] = None
    error: Optional[str] = None
