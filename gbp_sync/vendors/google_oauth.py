"""Client utilities for Google's OAuth 2.0 token and user-info endpoints."""

import logging
from typing import Any, Dict, Optional

import requests

from gbp_sync.models import OAuthClientConfig, TokenGrant

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_EXPIRES_IN = 3600
REQUEST_TIMEOUT = 15


class GoogleOAuthError(RuntimeError):
    """Raised when the token endpoint rejects a grant or returns no access token."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _post_token(data: Dict[str, str], timeout: float) -> TokenGrant:
    try:
        response = _SESSION.post(TOKEN_URL, data=data, timeout=timeout)
    except requests.RequestException as exc:
        raise GoogleOAuthError(f"token endpoint unreachable: {exc}") from exc

    try:
        payload = response.json()
    except ValueError:
        payload = {}

    if not (200 <= response.status_code < 300) or not payload.get("access_token"):
        error = payload.get("error_description") or payload.get("error") or f"HTTP {response.status_code}"
        logger.error("Token request (%s) failed: status=%s error=%s", data.get("grant_type"), response.status_code, error)
        raise GoogleOAuthError(error, status_code=response.status_code)

    try:
        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN

    return TokenGrant(
        access_token=payload["access_token"],
        expires_in=expires_in,
        refresh_token=payload.get("refresh_token"),
    )


def exchange_code(code: str, client: OAuthClientConfig, redirect_uri: str, timeout: float = REQUEST_TIMEOUT) -> TokenGrant:
    data = {
        "code": code,
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "redirect_uri": redirect_uri,
        "grant_type": "authorization_code",
    }
    return _post_token(data, timeout)


def refresh_access_token(refresh_token: str, client: OAuthClientConfig, timeout: float = REQUEST_TIMEOUT) -> TokenGrant:
    """Exchange a refresh credential for a new access credential. Never retried."""
    data = {
        "client_id": client.client_id,
        "client_secret": client.client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    return _post_token(data, timeout)


def fetch_user_info(access_token: str, timeout: float = REQUEST_TIMEOUT) -> Dict[str, Any]:
    response = _SESSION.get(USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}, timeout=timeout)
    if not (200 <= response.status_code < 300):
        logger.error("userinfo request failed: status=%s", response.status_code)
        raise GoogleOAuthError(f"userinfo HTTP {response.status_code}", status_code=response.status_code)
    return response.json()
