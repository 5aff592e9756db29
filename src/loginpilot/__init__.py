"""LoginPilot: learns per-site login automation rules from login attempts."""

__version__ = "0.1.0"

# Avoid importing heavy submodules at top-level to prevent side effects
__all__ = ["LoginPilot", "Settings"]


def __getattr__(name):
    if name == "LoginPilot":
        from .service import LoginPilot
        return LoginPilot
    if name == "Settings":
        from .core.config import Settings
        return Settings
    raise AttributeError(name)
