import json
import logging
import os
import subprocess
from typing import Any, Dict, List, Optional

from . import Credentials, IntegrationError, VaultItem, register_integration

logger = logging.getLogger(__name__)


class BitwardenCLIError(IntegrationError):
    """Exception raised for errors in the Bitwarden CLI."""
    pass


@register_integration("bitwarden")
class BitwardenVault:
    """Vault client backed by the Bitwarden CLI (``bw``)."""

    def __init__(self, session: Optional[str] = None, bw_path: Optional[str] = None):
        """Initialize the Bitwarden client.

        Args:
            session: Existing Bitwarden session key (falls back to BW_SESSION)
            bw_path: Path to the ``bw`` executable; searched for when omitted
        """
        self.session = session or os.environ.get("BW_SESSION")
        self._bw_path = bw_path

    @property
    def bw_path(self) -> str:
        if self._bw_path is None:
            self._bw_path = self._find_bw()
        return self._bw_path

    def _run_command(self, command: List[str]) -> str:
        """Run a Bitwarden CLI command and return its stdout."""
        env = os.environ.copy()
        if self.session:
            env['BW_SESSION'] = self.session
        try:
            result = subprocess.run(
                [self.bw_path] + command,
                capture_output=True,
                check=True,
                text=True,
                env=env,
            )
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else str(e)
            logger.error(f"Bitwarden CLI error running '{command[0]}': {error_msg}")
            raise BitwardenCLIError(f"Bitwarden command failed: {error_msg}") from e
        except FileNotFoundError as e:
            raise BitwardenCLIError(f"Bitwarden CLI not found at {self.bw_path}") from e
        return result.stdout.strip()

    @staticmethod
    def _find_bw() -> str:
        """Find the Bitwarden CLI executable."""
        possible_paths = [
            '/usr/local/bin/bw',
            '/usr/bin/bw',
            'bw',
        ]

        for path in possible_paths:
            try:
                result = subprocess.run([path, '--version'], capture_output=True, text=True)
                if result.returncode == 0:
                    logger.info(f"Found Bitwarden CLI at {path}")
                    return path
            except (FileNotFoundError, subprocess.CalledProcessError):
                continue

        raise BitwardenCLIError(
            "Bitwarden CLI not found. Please install it from "
            "https://bitwarden.com/help/cli/"
        )

    def _get_raw_item(self, item_id: str) -> Dict[str, Any]:
        output = self._run_command(['get', 'item', item_id])
        try:
            item = json.loads(output)
        except json.JSONDecodeError as e:
            raise BitwardenCLIError(f"Unexpected output for item {item_id}") from e
        if not isinstance(item, dict):
            raise BitwardenCLIError(f"Unexpected output for item {item_id}")
        return item

    def get_item(self, item_id: str) -> VaultItem:
        """Item title, username and first URL. The password is dropped."""
        item = self._get_raw_item(item_id)
        login = item.get('login') or {}
        url = next((u.get('uri') for u in login.get('uris') or [] if u.get('uri')), None)
        return VaultItem(
            id=item.get('id', item_id),
            title=item.get('name', ''),
            username=login.get('username') or '',
            url=url,
        )

    def get_credentials(self, item_id: str) -> Credentials:
        login = self._get_raw_item(item_id).get('login') or {}
        return Credentials(username=login.get('username') or '', password=login.get('password') or '')

    def get_totp(self, item_id: str) -> str:
        code = self._run_command(['get', 'totp', item_id])
        if not code:
            raise BitwardenCLIError(f"No TOTP configured for item {item_id}")
        return code
