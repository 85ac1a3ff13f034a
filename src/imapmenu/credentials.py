# =============================================================================
# Credential Storage
# =============================================================================
# Passwords and OAuth2 access tokens are never written to the config file.
# The engine asks a SecretStore for them at connect time, keyed by
# Account.key ("<username>@<imap host>").
#
# The default store is the system keyring (macOS Keychain, Secret Service,
# Windows Credential Locker) via the 'keyring' library. Entries can be
# managed from the shell too:
#
#   keyring get imapmenu user@example.com@imap.example.com
# =============================================================================

import logging
from typing import Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

# Keyring service name shared by all accounts
KEYRING_SERVICE = "imapmenu"


class SecretStore(Protocol):
    """Anything that can get/set/delete a secret by account key."""

    def get(self, account_key: str) -> str | None: ...

    def set(self, account_key: str, secret: str) -> None: ...

    def delete(self, account_key: str) -> None: ...


class KeyringSecretStore:
    """
    SecretStore backed by the system keyring.

    Usage:
        >>> store = KeyringSecretStore()
        >>> store.set(account.key, "hunter2")
        >>> store.get(account.key)
        'hunter2'
    """

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self.service = service

    def get(self, account_key: str) -> str | None:
        try:
            return keyring.get_password(self.service, account_key)
        except KeyringError as e:
            logger.error(f"Keyring lookup failed for {account_key}: {e}")
            return None

    def set(self, account_key: str, secret: str) -> None:
        keyring.set_password(self.service, account_key, secret)
        logger.debug(f"Stored secret for {account_key}")

    def delete(self, account_key: str) -> None:
        try:
            keyring.delete_password(self.service, account_key)
        except PasswordDeleteError:
            logger.debug(f"No stored secret for {account_key}")
