"""Provider token encryption.

WHAT:
    Symmetric encryption (Fernet) for provider access/refresh tokens stored in
    `provider_credentials`.

WHY:
    Raw tokens never land in the database or logs. The cipher is built from an
    explicit key so tests and workers can construct their own.

REFERENCES:
    - profitledger/models.py (ProviderCredential)
    - profitledger/services/credential_store.py
"""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """Encrypts and decrypts provider secrets with a single Fernet key."""

    def __init__(self, key: str):
        if not key:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it."
            )
        try:
            # Validate key length by decoding without storing plaintext material.
            base64.urlsafe_b64decode(key.encode("utf-8"))
            self._cipher = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            ) from exc

    def encrypt(self, plaintext: str, *, context: str) -> str:
        """Encrypt a secret before persisting. `context` is a log label."""
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")

        ciphertext = self._cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return ciphertext

    def decrypt(self, ciphertext: str, *, context: str) -> str:
        """Decrypt a stored secret.

        Raises:
            ValueError: If the stored value cannot be decrypted.
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty secret.")

        try:
            return self._cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
            raise ValueError("Unable to decrypt stored token.") from exc
