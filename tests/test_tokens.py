import gc
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from gbp_sync.core.errors import OAuthNotConfigured, PersistenceFailure, ReauthorizationRequired
from gbp_sync.core.tokens import TokenManager
from gbp_sync.models import ConnectedAccount, OAuthClientConfig, TokenGrant
from gbp_sync.vendors.business_profile import BusinessProfileError
from gbp_sync.vendors.google_oauth import GoogleOAuthError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self, *accounts, client=OAuthClientConfig("cid", "secret")):
        self.rows = {account.id: replace(account) for account in accounts}
        self.client = client
        self.updates = []
        self.names = {}
        self._lock = threading.Lock()

    def get_connected_account(self, account_id):
        with self._lock:
            row = self.rows.get(account_id)
            return replace(row) if row else None

    def get_oauth_client_config(self):
        return self.client

    def update_account_token(self, account_id, access_token, token_expires_at, expected_version, refresh_token=None):
        with self._lock:
            row = self.rows[account_id]
            if row.version != expected_version:
                return False
            row.access_token = access_token
            row.token_expires_at = token_expires_at
            row.refresh_token = refresh_token or row.refresh_token
            row.version += 1
            self.updates.append(account_id)
            return True

    def set_account_name(self, account_id, account_name):
        self.names[account_id] = account_name


class CountingRefresher:
    def __init__(self, delay=0.0, error=None, grant=None):
        self.delay = delay
        self.error = error
        self.grant = grant or TokenGrant(access_token="fresh-at", expires_in=3600)
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, refresh_token, client):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.grant


def expired_account(**overrides):
    values = dict(
        id="acc-1",
        location_id="locations/2",
        access_token="old-at",
        refresh_token="rt",
        token_expires_at=NOW - timedelta(minutes=5),
        version=3,
    )
    values.update(overrides)
    return ConnectedAccount(**values)


def make_manager(store, refresher, client_factory=None):
    return TokenManager(store=store, refresher=refresher, clock=lambda: NOW, client_factory=client_factory)


def test_valid_credential_is_returned_without_refresh():
    account = expired_account(token_expires_at=NOW + timedelta(minutes=1))
    refresher = CountingRefresher()

    assert make_manager(FakeStore(account), refresher).ensure_valid_access_credential(account) == "old-at"
    assert refresher.calls == 0


def test_expiry_boundary_counts_as_expired():
    account = expired_account(token_expires_at=NOW)
    refresher = CountingRefresher()

    assert make_manager(FakeStore(account), refresher).ensure_valid_access_credential(account) == "fresh-at"
    assert refresher.calls == 1


def test_missing_refresh_token_requires_reconnect_without_network():
    account = expired_account(refresh_token=None)
    refresher = CountingRefresher()

    with pytest.raises(ReauthorizationRequired) as excinfo:
        make_manager(FakeStore(account), refresher).ensure_valid_access_credential(account)

    assert excinfo.value.account_id == "acc-1"
    assert refresher.calls == 0


def test_expired_credential_is_refreshed_and_persisted():
    account = expired_account()
    store = FakeStore(account)

    token = make_manager(store, CountingRefresher()).ensure_valid_access_credential(account)

    assert token == "fresh-at"
    stored = store.rows["acc-1"]
    assert stored.access_token == "fresh-at"
    assert stored.token_expires_at == NOW + timedelta(seconds=3600)
    assert stored.refresh_token == "rt"
    assert stored.version == 4
    assert account.access_token == "fresh-at"
    assert account.version == 4


def test_rotated_refresh_token_is_stored():
    account = expired_account()
    store = FakeStore(account)
    refresher = CountingRefresher(grant=TokenGrant(access_token="fresh-at", expires_in=60, refresh_token="rt-2"))

    make_manager(store, refresher).ensure_valid_access_credential(account)

    assert store.rows["acc-1"].refresh_token == "rt-2"


def test_failed_refresh_leaves_row_untouched(caplog):
    account = expired_account()
    store = FakeStore(account)
    refresher = CountingRefresher(error=GoogleOAuthError("invalid_grant", status_code=400))

    with caplog.at_level("ERROR"):
        with pytest.raises(ReauthorizationRequired):
            make_manager(store, refresher).ensure_valid_access_credential(account)

    assert refresher.calls == 1
    assert store.updates == []
    assert store.rows["acc-1"].access_token == "old-at"
    assert "Refresh rejected" in caplog.text


def test_missing_client_config():
    account = expired_account()
    store = FakeStore(account, client=None)

    with pytest.raises(OAuthNotConfigured):
        make_manager(store, CountingRefresher()).ensure_valid_access_credential(account)


def test_concurrent_callers_share_one_refresh():
    account = expired_account()
    store = FakeStore(account)
    refresher = CountingRefresher(delay=0.2)
    manager = make_manager(store, refresher)
    results = []
    errors = []

    def worker():
        try:
            results.append(manager.ensure_valid_access_credential(replace(account)))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert refresher.calls == 1
    assert results == ["fresh-at", "fresh-at"]
    assert store.updates == ["acc-1"]


def test_lost_version_race_reuses_winner_credential():
    account = expired_account()
    store = FakeStore(account)

    class RacingRefresher(CountingRefresher):
        def __call__(self, refresh_token, client):
            grant = super().__call__(refresh_token, client)
            # another process stores its credential while this exchange is in flight
            store.update_account_token("acc-1", "winner-at", NOW + timedelta(hours=1), expected_version=3)
            return grant

    token = make_manager(store, RacingRefresher()).ensure_valid_access_credential(account)

    assert token == "winner-at"
    assert account.access_token == "winner-at"
    assert store.rows["acc-1"].version == 4


def test_account_removed_during_refresh_requires_reconnect():
    account = expired_account()

    class DisappearingStore(FakeStore):
        def get_connected_account(self, account_id):
            row = super().get_connected_account(account_id)
            self.rows.pop(account_id, None)
            return row

        def update_account_token(self, account_id, *args, **kwargs):
            return False

    with pytest.raises(ReauthorizationRequired):
        make_manager(DisappearingStore(account), CountingRefresher()).ensure_valid_access_credential(account)

    assert account.access_token == "old-at"


def test_stale_expired_winner_is_overwritten_once():
    account = expired_account()
    store = FakeStore(account)

    class BumpingRefresher(CountingRefresher):
        def __call__(self, refresh_token, client):
            grant = super().__call__(refresh_token, client)
            # a concurrent writer bumps the version without leaving a usable credential
            store.update_account_token("acc-1", "stale-at", NOW - timedelta(minutes=1), expected_version=3)
            return grant

    token = make_manager(store, BumpingRefresher()).ensure_valid_access_credential(account)

    assert token == "fresh-at"
    assert store.rows["acc-1"].access_token == "fresh-at"
    assert store.rows["acc-1"].version == 5
    assert account.version == 5


def test_unsaved_credential_is_never_returned():
    account = expired_account()

    class RejectingStore(FakeStore):
        def update_account_token(self, account_id, *args, **kwargs):
            return False

    with pytest.raises(PersistenceFailure):
        make_manager(RejectingStore(account), CountingRefresher()).ensure_valid_access_credential(account)

    assert account.access_token == "old-at"


def test_lock_table_does_not_grow():
    store = FakeStore(expired_account(id="acc-1"), expired_account(id="acc-2"))
    manager = make_manager(store, CountingRefresher())

    manager.ensure_valid_access_credential(expired_account(id="acc-1"))
    manager.ensure_valid_access_credential(expired_account(id="acc-2"))
    gc.collect()

    assert len(manager._locks) == 0


def test_deleted_account_requires_reconnect():
    account = expired_account()

    with pytest.raises(ReauthorizationRequired):
        make_manager(FakeStore(), CountingRefresher()).ensure_valid_access_credential(account)


class AccountsClient:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error

    def list_accounts(self, page_token=None):
        if self.error:
            raise self.error
        return self.payload


def test_resolve_account_name_caches_first_account():
    account = expired_account(account_name=None)
    store = FakeStore(account)
    client = AccountsClient({"accounts": [{"name": "accounts/9"}, {"name": "accounts/10"}]})
    manager = make_manager(store, CountingRefresher(), client_factory=lambda token: client)

    assert manager.resolve_account_name(account, "at") == "accounts/9"
    assert account.account_name == "accounts/9"
    assert store.names == {"acc-1": "accounts/9"}


def test_resolve_account_name_failure_returns_none():
    account = expired_account(account_name=None)
    client = AccountsClient(error=BusinessProfileError("forbidden", status_code=403))
    manager = make_manager(FakeStore(account), CountingRefresher(), client_factory=lambda token: client)

    assert manager.resolve_account_name(account, "at") is None


def test_resolve_account_name_uses_stored_value():
    account = expired_account(account_name="accounts/1")

    def fail(token):
        raise AssertionError("should not list accounts")

    assert make_manager(FakeStore(account), CountingRefresher(), client_factory=fail).resolve_account_name(account, "at") == "accounts/1"
