"""Google OAuth 2.0 token endpoint client.

WHAT:
    Exchanges refresh tokens (and authorization codes) for access tokens at
    Google's token endpoint using a form-encoded POST.

WHY:
    Access tokens live about an hour; the worker runs unattended and must
    renew them without user interaction.

REFERENCES:
    - https://developers.google.com/identity/protocols/oauth2/web-server#offline
    - ytreporting/services/token_refresher.py (caller)
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from ytreporting.config import get_settings

logger = logging.getLogger(__name__)


class TokenRefreshError(Exception):
    """Raised when the token endpoint rejects a request or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TokenResponse(BaseModel):
    """Successful token endpoint response."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


class GoogleTokenClient:
    """Thin client over https://oauth2.googleapis.com/token.

    Usage:
        with GoogleTokenClient() as client:
            response = client.refresh_access_token(refresh_token)
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        settings = get_settings()
        self.client_id = client_id or settings.GOOGLE_OAUTH_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_OAUTH_CLIENT_SECRET
        self.token_url = token_url or settings.GOOGLE_TOKEN_URL
        # Only close the HTTP client when this instance created it
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    def __enter__(self) -> "GoogleTokenClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def _post(self, data: dict) -> TokenResponse:
        form = {
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
            **data,
        }
        try:
            response = self._http.post(self.token_url, data=form)
        except httpx.RequestError as e:
            raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            # Google returns {"error": "invalid_grant", "error_description": "..."}
            try:
                body = response.json()
                detail = body.get("error_description") or body.get("error") or response.text
            except ValueError:
                detail = response.text
            raise TokenRefreshError(
                f"Token endpoint returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            return TokenResponse.model_validate(response.json())
        except ValueError as e:
            raise TokenRefreshError(f"Malformed token response: {e}") from e

    def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        Raises:
            TokenRefreshError: On any HTTP error, transport failure or
                malformed response body.
        """
        logger.debug("[TOKEN_REFRESH] Requesting new access token")
        return self._post({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code from the OAuth callback for tokens."""
        logger.debug("[TOKEN_REFRESH] Exchanging authorization code")
        return self._post({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })
