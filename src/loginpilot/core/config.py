import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

DEFAULT_DATA_DIR = os.path.expanduser("~/.loginpilot")
BUNDLED_RULES_PATH = Path(__file__).resolve().parent.parent / "rules" / "data" / "site-rules.json"

MAX_HISTORY_ENTRIES = 500
MAX_LEARNING_NOTES = 50


@dataclass
class Settings:
    """File locations and limits for one engine instance."""
    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))
    bundled_rules_file: Path = BUNDLED_RULES_PATH
    history_filename: str = "login-history.json"
    rules_filename: str = "learned-rules.json"
    community_rules_filename: str = "community-rules.json"
    max_history: int = MAX_HISTORY_ENTRIES
    max_learning_notes: int = MAX_LEARNING_NOTES

    def __post_init__(self):
        self.data_dir = Path(self.data_dir).expanduser()
        self.bundled_rules_file = Path(self.bundled_rules_file).expanduser()

    @property
    def history_file(self) -> Path:
        return self.data_dir / self.history_filename

    @property
    def rules_file(self) -> Path:
        return self.data_dir / self.rules_filename

    @property
    def community_rules_file(self) -> Path:
        return self.data_dir / self.community_rules_filename

    @classmethod
    def from_env(cls, data_dir: Optional[str] = None) -> 'Settings':
        """Build settings from LOGINPILOT_* environment variables.

        An explicit ``data_dir`` wins over LOGINPILOT_DATA_DIR.
        """
        kwargs = {}
        resolved = data_dir or os.environ.get("LOGINPILOT_DATA_DIR")
        if resolved:
            kwargs["data_dir"] = Path(resolved)
        bundled = os.environ.get("LOGINPILOT_BUNDLED_RULES")
        if bundled:
            kwargs["bundled_rules_file"] = Path(bundled)
        return cls(**kwargs)
