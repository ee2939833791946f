"""
Token vault: encryption of OAuth tokens at rest.

Tokens are encrypted with Fernet using a key derived per user from the
master key, so a leaked ciphertext is useless for any other user.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import threading
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from tether.integrations.errors import TokenVaultError

logger = logging.getLogger(__name__)


class TokenVault(Protocol):
    """Protocol for token encryption backends."""

    def encrypt(self, plaintext: str, user_id: str) -> str:
        """Encrypt a token for a user. Returns an opaque string."""
        ...

    def decrypt(self, ciphertext: str, user_id: str) -> str:
        """Decrypt a token previously encrypted for the same user."""
        ...


class FernetTokenVault:
    """
    Fernet-based token vault with per-user PBKDF2 key derivation.

    Example:
        vault = FernetTokenVault(settings.encryption_key.get_secret_value())
        stored = vault.encrypt(access_token, user_id)
        access_token = vault.decrypt(stored, user_id)
    """

    def __init__(self, master_key: str, *, iterations: int = 100_000):
        """
        Initialize the vault.

        Args:
            master_key: Master secret (any non-empty string)
            iterations: PBKDF2 iterations
        """
        if not master_key:
            raise TokenVaultError("Master key is required for token encryption")
        self._master_key = master_key.encode("utf-8")
        self._iterations = iterations
        self._ciphers: dict[str, Fernet] = {}
        self._lock = threading.Lock()

    def _cipher_for(self, user_id: str) -> Fernet:
        with self._lock:
            cipher = self._ciphers.get(user_id)
            if cipher is None:
                salt = hashlib.sha256(user_id.encode("utf-8")).digest()[:16]
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=32,
                    salt=salt,
                    iterations=self._iterations,
                )
                key = base64.urlsafe_b64encode(kdf.derive(self._master_key + user_id.encode("utf-8")))
                cipher = Fernet(key)
                self._ciphers[user_id] = cipher
            return cipher

    def encrypt(self, plaintext: str, user_id: str) -> str:
        try:
            return self._cipher_for(user_id).encrypt(plaintext.encode("utf-8")).decode("ascii")
        except (TypeError, ValueError) as e:
            logger.error(f"Token encryption failed for user {user_id}: {type(e).__name__}")
            raise TokenVaultError("Failed to encrypt token") from e

    def decrypt(self, ciphertext: str, user_id: str) -> str:
        try:
            return self._cipher_for(user_id).decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, TypeError, ValueError) as e:
            logger.error(f"Token decryption failed for user {user_id}: {type(e).__name__}")
            raise TokenVaultError("Failed to decrypt token") from e


__all__ = ["FernetTokenVault", "TokenVault"]
