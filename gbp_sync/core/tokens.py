"""Access-credential lifecycle for connected accounts.

A connected account stores an access credential, its expiry and a refresh
credential. Before any profile request the sync asks the manager for a valid
access credential; an expired one is exchanged for a new one exactly once per
account, even when several syncs for the same account race:

* inside one process a per-account lock serializes refreshes and the second
  caller re-reads the row and reuses the credential the first one stored;
* across processes the row's ``version`` column guards the write, and the
  loser of a race re-reads the winner's credential.

A rejected refresh leaves the stored row untouched and raises
``ReauthorizationRequired``; it is never retried.
"""

import logging
import threading
import weakref
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional

from gbp_sync.core import db
from gbp_sync.core.errors import OAuthNotConfigured, PersistenceFailure, ReauthorizationRequired
from gbp_sync.models import ConnectedAccount
from gbp_sync.vendors import google_oauth
from gbp_sync.vendors.business_profile import BusinessProfileClient, BusinessProfileError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    def __init__(
        self,
        store=db,
        refresher: Callable = google_oauth.refresh_access_token,
        clock: Callable[[], datetime] = _utcnow,
        client_factory: Callable[[str], BusinessProfileClient] = BusinessProfileClient,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._clock = clock
        self._client_factory = client_factory
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def ensure_valid_access_credential(self, account: ConnectedAccount) -> str:
        """Return a usable access credential, refreshing and persisting it if expired."""
        if not account.refresh_token:
            raise ReauthorizationRequired(
                "No refresh credential stored. Please reconnect your Google Business Profile.",
                account_id=account.id,
            )

        if not account.is_expired(self._clock()):
            return account.access_token

        with self._lock_for(account.id):
            current = self._store.get_connected_account(account.id)
            if current is None:
                raise ReauthorizationRequired("The connected account no longer exists.", account_id=account.id)

            if not current.is_expired(self._clock()):
                logger.info("Reusing access credential refreshed concurrently for account %s", account.id)
                self._adopt(account, current)
                return current.access_token

            return self._refresh(account, current)

    def _refresh(self, account: ConnectedAccount, current: ConnectedAccount) -> str:
        if not current.refresh_token:
            raise ReauthorizationRequired("No refresh credential stored.", account_id=account.id)

        client_config = self._store.get_oauth_client_config()
        if client_config is None:
            raise OAuthNotConfigured("OAuth client credentials are not configured")

        logger.info("Access credential for account %s expired; refreshing", account.id)
        try:
            grant = self._refresher(current.refresh_token, client_config)
        except google_oauth.GoogleOAuthError as exc:
            logger.error("Refresh rejected for account %s: %s", account.id, exc)
            raise ReauthorizationRequired(
                "Failed to refresh access token. Please reconnect your Google Business Profile.",
                account_id=account.id,
            ) from exc

        expires_at = self._clock() + timedelta(seconds=grant.expires_in)
        if self._store_grant(account, grant, expires_at, current.version):
            return grant.access_token

        winner = self._store.get_connected_account(account.id)
        if winner is None:
            raise ReauthorizationRequired("The connected account was removed during refresh.", account_id=account.id)
        if not winner.is_expired(self._clock()):
            logger.info("Account %s was refreshed by another worker; using the stored credential", account.id)
            self._adopt(account, winner)
            return winner.access_token

        logger.warning("Stale version while storing refreshed credential for account %s; retrying once", account.id)
        if self._store_grant(account, grant, expires_at, winner.version):
            return grant.access_token
        raise PersistenceFailure(f"Could not store the refreshed credential for account {account.id}")

    def _store_grant(self, account: ConnectedAccount, grant, expires_at: datetime, version: int) -> bool:
        stored = self._store.update_account_token(
            account.id,
            grant.access_token,
            expires_at,
            expected_version=version,
            refresh_token=grant.refresh_token,
        )
        if not stored:
            return False
        account.access_token = grant.access_token
        account.token_expires_at = expires_at
        if grant.refresh_token:
            account.refresh_token = grant.refresh_token
        account.version = version + 1
        logger.info("Access credential for account %s refreshed and saved", account.id)
        return True

    @staticmethod
    def _adopt(account: ConnectedAccount, source: ConnectedAccount) -> None:
        account.access_token = source.access_token
        account.token_expires_at = source.token_expires_at
        account.refresh_token = source.refresh_token or account.refresh_token
        account.version = source.version

    def resolve_account_name(self, account: ConnectedAccount, access_token: str) -> Optional[str]:
        """Look up and cache the account resource name once; None if it cannot be resolved."""
        if account.account_name:
            return account.account_name

        logger.info("Account name not stored for %s; fetching from API", account.id)
        try:
            payload = self._client_factory(access_token).list_accounts()
        except BusinessProfileError as exc:
            logger.warning("Failed to list accounts for %s: %s", account.id, exc)
            return None

        accounts = payload.get("accounts") or []
        name = accounts[0].get("name") if accounts and isinstance(accounts[0], dict) else None
        if not name:
            logger.warning("No accounts returned for connected account %s", account.id)
            return None

        account.account_name = name
        try:
            self._store.set_account_name(account.id, name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to cache account name for %s: %s", account.id, exc)
        return name


@lru_cache(maxsize=1)
def get_token_manager() -> TokenManager:
    return TokenManager()
