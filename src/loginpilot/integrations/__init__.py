"""Credential vault and two-factor code integrations for LoginPilot."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Type


class IntegrationError(Exception):
    """Base exception for integration errors."""
    pass


@dataclass
class VaultItem:
    """Non-secret metadata of a vault login item."""
    id: str
    title: str
    username: str = ""
    url: Optional[str] = None


@dataclass
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass
class TwoFactorCode:
    code: str = field(repr=False)
    sender: Optional[str] = None
    confidence: str = "medium"  # high | medium | low


class VaultClient(Protocol):
    def get_item(self, item_id: str) -> VaultItem:
        ...

    def get_credentials(self, item_id: str) -> Credentials:
        ...

    def get_totp(self, item_id: str) -> str:
        ...


class TwoFactorReader(Protocol):
    # Where codes are read from: "messages" (SMS) or "gmail" (email)
    source: str

    def find_code(self, sender: Optional[str] = None, max_age_seconds: int = 300) -> Optional[TwoFactorCode]:
        ...


# Dictionary of available integrations
INTEGRATIONS: Dict[str, Type[Any]] = {}


def register_integration(name: str):
    """Decorator to register an integration class."""
    def decorator(cls: Type[Any]) -> Type[Any]:
        INTEGRATIONS[name.lower()] = cls
        return cls
    return decorator


def get_integration(name: str, **kwargs) -> Any:
    """Get an instance of the specified integration.

    Args:
        name: Name of the integration
        **kwargs: Additional arguments to pass to the integration

    Returns:
        An instance of the specified integration

    Raises:
        IntegrationError: If the integration is not found
    """
    name = name.lower()
    if name not in INTEGRATIONS:
        raise IntegrationError(f"Integration '{name}' not found")

    return INTEGRATIONS[name](**kwargs)


def list_available_integrations() -> List[str]:
    """List all available integrations.

    Returns:
        List of integration names
    """
    return list(INTEGRATIONS.keys())


# Import integration modules so their @register_integration decorators run
from . import bitwarden  # noqa: E402,F401
