"""Token store for delegated Google OAuth credentials.

WHAT:
    Reads, decrypts, encrypts and persists the per-user Google credential
    (access token, refresh token, expiry) used by the ingestion worker.

WHY:
    - Keeps encryption logic out of the refresher and scheduler.
    - A single place decides how token-endpoint responses map to stored fields,
      so expiry is always derived from the server-declared `expires_in`.

REFERENCES:
    - ytreporting/security.py (encrypt_secret / decrypt_secret)
    - ytreporting/services/token_refresher.py (main consumer)
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ytreporting.models import UserCredential
from ytreporting.security import encrypt_secret, decrypt_secret

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    """Decrypted view of a stored credential. Never persisted as-is."""

    user_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at_ms: Optional[int]
    scopes: Optional[str] = None


def get_credential(db: Session, user_id: str) -> Optional[Credential]:
    """Read and decrypt the credential for a user.

    WHAT:
        Looks up `user_credentials` by user id and decrypts both tokens.
    WHY:
        The refresher and the scheduler need plaintext tokens to call Google.
        A credential that cannot be decrypted is treated as missing so the
        caller takes the "no credential" path instead of crashing the sweep.

    Returns:
        Credential, or None if not found or undecryptable
    """
    row = (
        db.query(UserCredential)
        .filter(UserCredential.user_id == user_id)
        .first()
    )
    if not row:
        logger.warning("[TOKEN_SERVICE] No credential found for user %s", user_id)
        return None

    try:
        access_token = (
            decrypt_secret(row.access_token_enc, context=f"{user_id}:access")
            if row.access_token_enc else None
        )
        refresh_token = (
            decrypt_secret(row.refresh_token_enc, context=f"{user_id}:refresh")
            if row.refresh_token_enc else None
        )
    except ValueError as e:
        logger.error("[TOKEN_SERVICE] Failed to decrypt credential for %s: %s", user_id, e)
        return None

    return Credential(
        user_id=user_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at_ms=row.expires_at_ms,
        scopes=row.scopes,
    )


def store_credential(
    db: Session,
    user_id: str,
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at_ms: Optional[int] = None,
    scopes: Optional[str] = None,
) -> UserCredential:
    """Encrypt and persist a user's credential.

    WHAT:
        Creates or updates the `UserCredential` row for the user and commits.
    WHY:
        Called after a successful refresh or a fresh authorization-code
        exchange; those are the only writers of the credential.

    A `refresh_token` of None keeps the stored refresh token, since Google
    usually omits it from refresh responses.

    Returns:
        The UserCredential ORM instance.
    """
    encrypted_access = (
        encrypt_secret(access_token, context=f"{user_id}:access")
        if access_token else None
    )
    encrypted_refresh = (
        encrypt_secret(refresh_token, context=f"{user_id}:refresh") if refresh_token else None
    )

    row = (
        db.query(UserCredential)
        .filter(UserCredential.user_id == user_id)
        .first()
    )
    if row:
        row.access_token_enc = encrypted_access
        if encrypted_refresh:
            row.refresh_token_enc = encrypted_refresh
        row.expires_at_ms = expires_at_ms
        if scopes is not None:
            row.scopes = scopes
        logger.info("[TOKEN_SERVICE] Updated encrypted credential for %s", user_id)
    else:
        row = UserCredential(
            user_id=user_id,
            provider="google",
            access_token_enc=encrypted_access,
            refresh_token_enc=encrypted_refresh,
            expires_at_ms=expires_at_ms,
            scopes=scopes,
        )
        db.add(row)
        logger.info("[TOKEN_SERVICE] Created encrypted credential for %s", user_id)

    db.commit()
    db.refresh(row)
    return row


def credential_from_token_response(
    payload: Dict[str, Any],
    issued_at_ms: int,
) -> Dict[str, Any]:
    """Map a Google token-endpoint response to `store_credential` kwargs.

    `expires_at_ms` is `issued_at_ms + expires_in * 1000`. A response without
    `expires_in` yields no expiry rather than a guessed one.
    """
    expires_in = payload.get("expires_in")
    expires_at_ms = None
    if expires_in is not None:
        expires_at_ms = issued_at_ms + int(expires_in) * 1000

    return {
        "access_token": payload.get("access_token"),
        "refresh_token": payload.get("refresh_token"),
        "expires_at_ms": expires_at_ms,
        "scopes": payload.get("scope"),
    }
