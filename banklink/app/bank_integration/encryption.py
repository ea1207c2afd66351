"""
Credential Vault

Encrypts provider credentials before they are stored on a bank connection and
decrypts them only for the duration of a provider call.

Ciphertext format: ``v1:<key_id>:<fernet token>``. The key id lets older rows
stay readable after a new key becomes active, so keys can be rotated without a
migration that handles plaintext.
"""

from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialDecryptionError, EncryptionNotConfiguredError


CIPHERTEXT_VERSION = "v1"


class CredentialVault:
    """
    Encrypt and decrypt provider credentials using Fernet (AES-128-CBC + HMAC).

    Constructed once at startup and shared read-only. Refuses to operate
    without a configured key; there is no plaintext or encoding fallback.
    """

    def __init__(self, keys: Dict[str, str], active_key_id: Optional[str] = None):
        """
        Args:
            keys: Mapping of key id to urlsafe-base64 Fernet key
            active_key_id: Key used for new ciphertext (defaults to the only key)

        Raises:
            EncryptionNotConfiguredError: No keys, ambiguous/unknown active key,
                or a key that is not a valid Fernet key
        """
        if not keys:
            raise EncryptionNotConfiguredError(
                "No credential encryption key configured. "
                "Set CREDENTIAL_ENCRYPTION_KEYS to 'key_id:<fernet key>'."
            )

        if active_key_id is None:
            if len(keys) != 1:
                raise EncryptionNotConfiguredError(
                    "CREDENTIAL_ACTIVE_KEY_ID is required when more than one key is configured"
                )
            active_key_id = next(iter(keys))

        if active_key_id not in keys:
            raise EncryptionNotConfiguredError(f"Active key '{active_key_id}' is not among the configured keys")

        self._ciphers = {}
        for key_id, key in keys.items():
            if ":" in key_id:
                raise EncryptionNotConfiguredError(f"Key id '{key_id}' must not contain ':'")
            try:
                self._ciphers[key_id] = Fernet(key.encode() if isinstance(key, str) else key)
            except (ValueError, TypeError) as e:
                raise EncryptionNotConfiguredError(f"Invalid encryption key '{key_id}': {e}") from e

        self.active_key_id = active_key_id

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        try:
            keys = settings.encryption_keys()
        except ValueError as e:
            raise EncryptionNotConfiguredError(str(e)) from e
        return cls(keys, settings.credential_active_key_id)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a credential for storage.

        Example:
            >>> vault = CredentialVault({"k1": CredentialVault.generate_key()})
            >>> vault.encrypt("access-token").startswith("v1:k1:")
            True
        """
        if plaintext is None:
            raise ValueError("Cannot encrypt a missing credential")

        token = self._ciphers[self.active_key_id].encrypt(plaintext.encode())
        return f"{CIPHERTEXT_VERSION}:{self.active_key_id}:{token.decode()}"

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored credential.

        Raises:
            CredentialDecryptionError: Unknown version or key, or tampered token
        """
        key_id, token = self._parse(ciphertext)

        try:
            return self._ciphers[key_id].decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise CredentialDecryptionError(
                f"Credential sealed with key '{key_id}' failed authentication"
            ) from e

    def needs_rotation(self, ciphertext: str) -> bool:
        key_id, _ = self._parse(ciphertext)
        return key_id != self.active_key_id

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt ciphertext under the active key (no-op if already current)."""
        if not self.needs_rotation(ciphertext):
            return ciphertext
        return self.encrypt(self.decrypt(ciphertext))

    def _parse(self, ciphertext: str):
        if not ciphertext:
            raise CredentialDecryptionError("Empty credential ciphertext")

        parts = ciphertext.split(":", 2)
        if len(parts) != 3 or parts[0] != CIPHERTEXT_VERSION:
            raise CredentialDecryptionError("Unrecognized credential ciphertext format")

        _, key_id, token = parts
        if key_id not in self._ciphers:
            raise CredentialDecryptionError(f"Credential sealed with unknown key '{key_id}'")

        return key_id, token
