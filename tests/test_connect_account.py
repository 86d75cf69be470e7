from datetime import datetime, timedelta, timezone

import pytest

from gbp_sync.core.errors import AuthorizationFailed, OAuthNotConfigured
from gbp_sync.jobs import connect_account as job
from gbp_sync.models import OAuthClientConfig, TokenGrant
from gbp_sync.vendors.business_profile import BusinessProfileError
from gbp_sync.vendors.google_oauth import GoogleOAuthError

NOW = datetime(2026, 7, 15, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self, client=OAuthClientConfig("cid", "secret")):
        self.client = client
        self.accounts = []
        self.businesses = []
        self.deleted = []

    def get_oauth_client_config(self):
        return self.client

    def upsert_connected_account(self, row):
        self.accounts.append(row)
        return str(len(self.accounts))

    def upsert_business_for_location(self, row):
        self.businesses.append(row)
        return str(len(self.businesses))

    def delete_connected_account(self, account_id):
        self.deleted.append(account_id)
        return account_id == "known"


class FakeClient:
    def __init__(self, locations_by_account, fail_accounts=()):
        self.locations_by_account = locations_by_account
        self.fail_accounts = fail_accounts
        self.location_calls = []

    def list_accounts(self, page_token=None):
        return {"accounts": [{"name": name, "accountName": f"Owner {name}"} for name in self.locations_by_account]}

    def list_locations(self, account_name, page_token=None, page_size=100):
        self.location_calls.append((account_name, page_token, page_size))
        if account_name in self.fail_accounts:
            raise BusinessProfileError("HTTP 403", status_code=403)
        pages = self.locations_by_account[account_name]
        index = int(page_token or 0)
        payload = {"locations": pages[index]}
        if index + 1 < len(pages):
            payload["nextPageToken"] = str(index + 1)
        return payload


def location(number, **extra):
    payload = {"name": f"locations/{number}", "title": f"Shop {number}", "metadata": {"placeId": f"place-{number}"}}
    payload.update(extra)
    return payload


def connect(store, client, grant=None, exchanger=None):
    return job.connect_account(
        "auth-code",
        "https://app.example.com/cb",
        "user-1",
        store=store,
        exchanger=exchanger or (lambda code, cfg, redirect_uri: grant or TokenGrant("at", 3600, "rt")),
        user_info=lambda token: {"id": "g-1", "email": "owner@example.com"},
        client_factory=lambda token: client,
        clock=lambda: NOW,
    )


def test_links_every_location_across_pages():
    client = FakeClient({
        "accounts/1": [[location(1), location(2)], [location(3)]],
        "accounts/2": [[location(4, categories={"primaryCategory": {"displayName": "Bakery"}})]],
    })
    store = FakeStore()

    linked = connect(store, client)

    assert linked == 4
    assert [row["location_id"] for row in store.accounts] == ["locations/1", "locations/2", "locations/3", "locations/4"]
    first = store.accounts[0]
    assert first["refresh_token"] == "rt"
    assert first["gbp_account_name"] == "accounts/1"
    assert first["google_email"] == "owner@example.com"
    assert first["token_expires_at"] == NOW + timedelta(seconds=3600)
    assert first["place_id"] == "place-1"
    assert store.businesses[3]["categories"] == ["Bakery"]
    assert store.businesses[0]["gbp_location_id"] == "locations/1"
    assert client.location_calls[0] == ("accounts/1", None, 100)


def test_failed_account_listing_is_skipped():
    client = FakeClient({"accounts/1": [[location(1)]], "accounts/2": [[location(2)]]}, fail_accounts=("accounts/1",))
    store = FakeStore()

    assert connect(store, client) == 1
    assert store.accounts[0]["location_id"] == "locations/2"


def test_missing_refresh_token_is_passed_through_for_coalesce(caplog):
    store = FakeStore()
    with caplog.at_level("WARNING"):
        connect(store, FakeClient({"accounts/1": [[location(1)]]}), grant=TokenGrant("at", 3600, None))

    assert store.accounts[0]["refresh_token"] is None
    assert "no refresh credential" in caplog.text


def test_requires_client_config():
    with pytest.raises(OAuthNotConfigured):
        connect(FakeStore(client=None), FakeClient({}))


def test_rejected_code():
    def exchanger(code, cfg, redirect_uri):
        raise GoogleOAuthError("invalid_grant", status_code=400)

    with pytest.raises(AuthorizationFailed):
        connect(FakeStore(), FakeClient({}), exchanger=exchanger)


def test_disconnect():
    store = FakeStore()
    assert job.disconnect_account("known", store=store) is True
    assert job.disconnect_account("other", store=store) is False
    assert store.deleted == ["known", "other"]
