"""Symmetric encryption for stored OAuth credentials.

WHAT:
    Fernet wrappers used by the token store to keep Google access/refresh
    tokens out of plaintext storage.

WHY:
    Tokens grant read access to a user's YouTube analytics and revenue; they
    must never land in the database or logs in clear text.

KEY ROTATION:
    TOKEN_ENCRYPTION_KEY may hold several comma-separated keys. The first one
    encrypts; all of them are tried for decryption, so old rows stay readable
    until they are rewritten on their next refresh.
"""

import logging
import os
from typing import List

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)


def _read_keys() -> List[str]:
    raw = os.getenv("TOKEN_ENCRYPTION_KEY", "")
    if not raw:
        # Developer convenience: fall back to backend/.env
        from ytreporting.utils.env import load_env_file
        load_env_file()
        raw = os.getenv("TOKEN_ENCRYPTION_KEY", "")

    keys = [key.strip() for key in raw.split(",") if key.strip()]
    if not keys:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a Fernet key and export it "
            "or add it to backend/.env."
        )
    return keys


def _build_cipher(keys: List[str]) -> MultiFernet:
    """Validate every key at import time; a bad key should stop the worker, not a sweep."""
    try:
        return MultiFernet([Fernet(key) for key in keys])
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be URL-safe base64-encoded 32-byte key(s). "
            "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        ) from exc


_cipher = _build_cipher(_read_keys())


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a token before persisting.

    Args:
        plaintext: Raw secret (e.g. a Google access token).
        context:   Label for logs, e.g. "<user_id>:refresh". Never the secret.

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s", context)
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored token.

    Raises:
        ValueError: If no configured key can decrypt the value.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
