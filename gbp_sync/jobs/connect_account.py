"""Authorization callback and disconnect for profile accounts."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import requests

from gbp_sync.core import db
from gbp_sync.core.config import get_settings
from gbp_sync.core.errors import AuthorizationFailed, OAuthNotConfigured
from gbp_sync.etl.aggregate import paginate
from gbp_sync.vendors import google_oauth
from gbp_sync.vendors.business_profile import BusinessProfileClient, BusinessProfileError

logger = logging.getLogger(__name__)

ACCOUNT_PAGE_CEILING = 10
LOCATION_PAGE_SIZE = 100
LOCATION_PAGE_CEILING = 50


def _business_row(user_id: str, location: Dict[str, Any]) -> Dict[str, Any]:
    categories = location.get("categories") or {}
    names = [(categories.get("primaryCategory") or {}).get("displayName")]
    names += [category.get("displayName") for category in categories.get("additionalCategories") or []]
    return {
        "user_id": user_id,
        "name": location.get("title") or location["name"],
        "google_place_id": (location.get("metadata") or {}).get("placeId"),
        "address": location.get("storefrontAddress") or {},
        "phone": (location.get("phoneNumbers") or {}).get("primaryPhone"),
        "website": location.get("websiteUri"),
        "categories": [name for name in names if name],
        "gbp_location_id": location["name"],
    }


def connect_account(
    code: str,
    redirect_uri: Optional[str],
    user_id: str,
    *,
    store=db,
    exchanger: Callable = google_oauth.exchange_code,
    user_info: Callable = google_oauth.fetch_user_info,
    client_factory: Callable[[str], BusinessProfileClient] = BusinessProfileClient,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> int:
    """Exchange an authorization code and link every location it grants. Returns the number linked."""
    if not code or not user_id:
        raise ValueError("code and user_id are required")

    client_config = store.get_oauth_client_config()
    if client_config is None:
        raise OAuthNotConfigured("OAuth client credentials are not configured")
    redirect_uri = redirect_uri or get_settings().oauth_redirect_uri
    if not redirect_uri:
        raise OAuthNotConfigured("OAUTH_REDIRECT_URI is not configured")

    try:
        grant = exchanger(code, client_config, redirect_uri)
    except google_oauth.GoogleOAuthError as exc:
        raise AuthorizationFailed(f"Authorization code exchange failed: {exc}") from exc
    expires_at = clock() + timedelta(seconds=grant.expires_in)
    if not grant.refresh_token:
        logger.warning("Token exchange for user %s returned no refresh credential; keeping any stored one", user_id)

    try:
        profile = user_info(grant.access_token)
    except (google_oauth.GoogleOAuthError, requests.RequestException, ValueError) as exc:
        logger.warning("Could not read user info for user %s: %s", user_id, exc)
        profile = {}

    client = client_factory(grant.access_token)
    try:
        accounts, _ = paginate(lambda token: client.list_accounts(token), "accounts", ACCOUNT_PAGE_CEILING, label="accounts")
    except BusinessProfileError as exc:
        raise AuthorizationFailed(f"Failed to list business accounts: {exc}") from exc

    linked = 0
    for account in accounts:
        account_name = account.get("name")
        if not account_name:
            continue
        try:
            locations, _ = paginate(
                lambda token: client.list_locations(account_name, token, LOCATION_PAGE_SIZE),
                "locations",
                LOCATION_PAGE_CEILING,
                label=f"{account_name} locations",
            )
        except BusinessProfileError as exc:
            logger.warning("Failed to list locations for %s: %s", account_name, exc)
            continue

        for location in locations:
            if not location.get("name"):
                continue
            store.upsert_connected_account({
                "user_id": user_id,
                "google_account_id": profile.get("id") or profile.get("sub"),
                "google_email": profile.get("email"),
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token,
                "token_expires_at": expires_at,
                "account_name": account.get("accountName"),
                "gbp_account_name": account_name,
                "location_name": location.get("title"),
                "location_id": location["name"],
                "place_id": (location.get("metadata") or {}).get("placeId"),
            })
            store.upsert_business_for_location(_business_row(user_id, location))
            linked += 1

    logger.info("Linked %d location(s) across %d account(s) for user %s", linked, len(accounts), user_id)
    return linked


def disconnect_account(account_id: str, *, store=db) -> bool:
    removed = store.delete_connected_account(account_id)
    if removed:
        logger.info("Disconnected account %s", account_id)
    else:
        logger.warning("Disconnect requested for unknown account %s", account_id)
    return removed
