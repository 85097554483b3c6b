"""
Credential sealing.

Account documents never hold OAuth tokens or IMAP/SMTP passwords in the
clear: the whole ``ConnectionCredentials`` container is serialized and
sealed into a single Fernet token before it is written, and opened again
when the account is loaded.
"""

import base64
import json
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mailsync.core.config import SyncSettings, get_settings
from mailsync.providers.base import ConnectionCredentials

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100_000


class VaultError(Exception):
    """Credentials could not be sealed or opened."""
    pass


class DecryptionError(VaultError):
    """Sealed value was produced with another key or is corrupted."""
    pass


class CredentialVault:
    """
    Seals connection credentials with a key derived from the master key.

    Usage:
        vault = CredentialVault.from_settings(settings)
        sealed = vault.seal(account.credentials)
        account.credentials = vault.open(sealed)
    """

    def __init__(self, master_key: str, salt: str):
        if not master_key:
            raise VaultError("Master key must not be empty")
        self._fernet = Fernet(self.derive_key(master_key, salt))

    @staticmethod
    def derive_key(master_key: str, salt: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode("utf-8"),
            iterations=KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(master_key.encode("utf-8")))

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "CredentialVault":
        master_key = settings.credential_vault_key
        if not master_key:
            logger.warning(
                "CREDENTIAL_VAULT_KEY is not set; using an ephemeral key. "
                "Connected accounts will need to be reconnected after a restart."
            )
            master_key = Fernet.generate_key().decode("ascii")
        return cls(master_key, settings.credential_vault_salt)

    def seal(self, credentials: ConnectionCredentials) -> str:
        try:
            payload = json.dumps(credentials.to_dict(), default=str)
        except (TypeError, ValueError) as e:
            raise VaultError(f"Credentials are not serializable: {e}")
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def open(self, sealed: str) -> ConnectionCredentials:
        """
        Raises:
            DecryptionError: If the value was sealed with another key or is damaged
        """
        try:
            payload = self._fernet.decrypt(sealed.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError):
            logger.error("Could not open sealed credentials (wrong key or corrupted value)")
            raise DecryptionError("Sealed credentials could not be opened")
        try:
            return ConnectionCredentials.from_dict(json.loads(payload))
        except (ValueError, KeyError) as e:
            raise DecryptionError(f"Sealed credentials are malformed: {e}")


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Process-wide vault built from the current settings."""
    global _vault
    if _vault is None:
        _vault = CredentialVault.from_settings(get_settings())
    return _vault
