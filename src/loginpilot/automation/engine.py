from typing import List, Optional, Protocol

from .types import ClickResult, CommandResult, FillResult


class AutomationExecutor(Protocol):
    """The browser-side executor that performs page actions."""

    def fill_credentials(self, username: str, password: str) -> FillResult:
        ...

    def fill_totp(self, code: str) -> CommandResult:
        ...

    def click_button(self, text: str, exclude_texts: Optional[List[str]] = None) -> ClickResult:
        ...
