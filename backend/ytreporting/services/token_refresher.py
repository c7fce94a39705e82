"""Access token refresher.

WHAT:
    `get_valid_access_token(user_id)` returns an access token that is not
    about to expire, refreshing it through Google first when it is inside the
    refresh window (default 5 minutes).

WHY:
    Google access tokens live about an hour while sweeps run hourly, so
    nearly every sweep needs a refresh. Refresh failures are not fatal here:
    the stale token is returned and the Reporting API call fails loudly with
    an authentication error, which the scheduler handles per job.

CONCURRENCY:
    Refreshes are single-flight per user. The ingestion sweep and a manual
    trigger may resolve the same user's token at the same time; only the
    first caller talks to Google, the others wait on the same lock and then
    read the refreshed credential.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from sqlalchemy.orm import Session

from ytreporting.config import get_settings
from ytreporting.services.google_token_client import GoogleTokenClient, TokenRefreshError
from ytreporting.services.token_service import (
    Credential,
    credential_from_token_response,
    get_credential,
    store_credential,
)

logger = logging.getLogger(__name__)

# user_id -> [lock, number of callers holding or waiting on it]
_locks: Dict[str, List] = {}
_locks_guard = threading.Lock()


@contextmanager
def _user_lock(user_id: str) -> Iterator[None]:
    """Hold the refresh lock for one user; dropped once nobody needs it."""
    with _locks_guard:
        entry = _locks.setdefault(user_id, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _locks[user_id]


def _now_ms() -> int:
    return int(time.time() * 1000)


def needs_refresh(credential: Credential, now_ms: int, window_seconds: int) -> bool:
    """True when the token expires within the window (or expiry is unknown)."""
    if credential.expires_at_ms is None:
        return True
    return credential.expires_at_ms - now_ms < window_seconds * 1000


def get_valid_access_token(
    user_id: str,
    db: Optional[Session] = None,
    token_client: Optional[GoogleTokenClient] = None,
) -> Optional[str]:
    """Return a usable access token for the user.

    Args:
        user_id: Opaque user id owning the credential
        db: Session to read/write the credential with; a fresh session is
            opened (and closed) when omitted
        token_client: Token endpoint client (injected in tests)

    Returns:
        The access token, possibly refreshed; the stale token when the refresh
        failed; None when the user has no stored credential.
    """
    if db is None:
        from ytreporting.database import get_sync_session

        with get_sync_session() as session:
            return get_valid_access_token(user_id, db=session, token_client=token_client)

    window = get_settings().TOKEN_REFRESH_WINDOW_SECONDS

    credential = get_credential(db, user_id)
    if credential is None:
        return None

    if not needs_refresh(credential, _now_ms(), window):
        return credential.access_token

    if not credential.refresh_token:
        logger.warning("[TOKEN_REFRESH] Token for %s is expiring but no refresh token is stored", user_id)
        return credential.access_token

    with _user_lock(user_id):
        # Another caller may have refreshed while we waited
        db.expire_all()
        credential = get_credential(db, user_id)
        if credential is None:
            return None
        if not needs_refresh(credential, _now_ms(), window):
            logger.debug("[TOKEN_REFRESH] Token for %s refreshed by a concurrent caller", user_id)
            return credential.access_token

        owns_client = token_client is None
        client = token_client or GoogleTokenClient()
        issued_at_ms = _now_ms()
        try:
            response = client.refresh_access_token(credential.refresh_token)
        except TokenRefreshError as e:
            logger.error("[TOKEN_REFRESH] Refresh failed for %s, using stale token: %s", user_id, e)
            return credential.access_token
        finally:
            if owns_client:
                client.close()

        fields = credential_from_token_response(response.model_dump(), issued_at_ms)
        store_credential(db, user_id, **fields)
        logger.info("[TOKEN_REFRESH] Refreshed access token for %s", user_id)
        return fields["access_token"]
