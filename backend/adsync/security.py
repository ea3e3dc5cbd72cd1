"""Symmetric encryption for provider tokens.

WHAT:
    Fernet-based `encrypt_secret` / `decrypt_secret` used for every Meta
    access token that lands in `meta_credentials`.

WHY:
    - Keeps provider credentials out of plaintext storage and logs.
    - Fernet is authenticated: tampered ciphertext fails to decrypt instead of
      returning corrupted plaintext.

REFERENCES:
    - backend/adsync/services/token_service.py (encrypts on write)
    - backend/adsync/services/token_validation_service.py (decrypts on use)
"""

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from adsync.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache()
def _get_cipher() -> Fernet:
    """Build the Fernet cipher from TOKEN_ENCRYPTION_KEY (once per process)."""
    key = get_settings().TOKEN_ENCRYPTION_KEY
    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
            "or add it to backend/.env."
        )

    try:
        # Validate key length by decoding without storing plaintext material.
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Meta access token).
        context:   Friendly label for logs (provider/user).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Args:
        ciphertext: Encrypted token retrieved from DB.
        context:    Friendly label for logs (provider/user).

    Returns:
        Plaintext secret string.

    Raises:
        ValueError: If the stored value cannot be decrypted (wrong key or tampered).
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.info("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
