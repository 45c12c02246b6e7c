"""Encryption key storage in the platform secret store (via keyring)."""

import logging

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .errors import SecurityError

logger = logging.getLogger("notebooklm_rpc.auth")


class KeyringSecretStore:
    """One named keyring entry holding the hex-encoded cookie key."""

    def __init__(self, service: str, account: str):
        self.service = service
        self.account = account

    def get_key(self) -> str | None:
        """Return the stored key, or None if no entry exists."""
        try:
            return keyring.get_password(self.service, self.account)
        except KeyringError as e:
            raise SecurityError("Failed to read encryption key from the system keychain", e)

    def set_key(self, key: str) -> None:
        try:
            keyring.set_password(self.service, self.account, key)
        except KeyringError as e:
            raise SecurityError("Failed to store encryption key in the system keychain", e)

    def delete_key(self) -> None:
        try:
            keyring.delete_password(self.service, self.account)
        except PasswordDeleteError:
            # Entry might not exist
            pass
        except KeyringError as e:
            raise SecurityError("Failed to delete encryption key from the system keychain", e)
