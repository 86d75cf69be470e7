"""Database helpers for connected accounts, business records and snapshots."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg2 import extras, pool

from gbp_sync.core.config import get_settings
from gbp_sync.models import BusinessRecord, ConnectedAccount, OAuthClientConfig

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None

OAUTH_SETTINGS_KEY = "gbp_oauth"


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        pg_pool.putconn(conn)


def _fetch_one(sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    with get_connection() as conn:
        with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        conn.commit()
    return dict(row) if row else None


def _execute(sql: str, params: Dict[str, Any]) -> int:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rowcount = cur.rowcount
        conn.commit()
    return rowcount


def _to_account(row: Dict[str, Any]) -> ConnectedAccount:
    return ConnectedAccount(
        id=str(row["id"]),
        location_id=row.get("location_id"),
        access_token=row.get("access_token"),
        refresh_token=row.get("refresh_token"),
        token_expires_at=row.get("token_expires_at"),
        account_name=row.get("gbp_account_name"),
        google_email=row.get("google_email"),
        user_id=str(row["user_id"]) if row.get("user_id") is not None else None,
        place_id=row.get("place_id"),
        version=row.get("version") or 0,
    )


_ACCOUNT_COLUMNS = """
    id, user_id, google_email, access_token, refresh_token, token_expires_at,
    gbp_account_name, location_id, place_id, version
"""


def get_connected_account(account_id: str) -> Optional[ConnectedAccount]:
    row = _fetch_one(f"SELECT {_ACCOUNT_COLUMNS} FROM connected_gbp WHERE id = %(id)s", {"id": account_id})
    return _to_account(row) if row else None


def get_connected_account_for_location(location_id: str) -> Optional[ConnectedAccount]:
    row = _fetch_one(
        f"""
        SELECT {_ACCOUNT_COLUMNS} FROM connected_gbp
        WHERE location_id = %(location_id)s
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        {"location_id": location_id},
    )
    return _to_account(row) if row else None


_UPDATE_TOKEN = """
UPDATE connected_gbp SET
    access_token = %(access_token)s,
    token_expires_at = %(token_expires_at)s,
    refresh_token = COALESCE(%(refresh_token)s, refresh_token),
    version = version + 1,
    updated_at = NOW()
WHERE id = %(id)s AND version = %(expected_version)s;
"""


def update_account_token(
    account_id: str,
    access_token: str,
    token_expires_at: datetime,
    expected_version: int,
    refresh_token: Optional[str] = None,
) -> bool:
    """Store a refreshed access credential if the row is still at ``expected_version``.

    Returns False when another writer refreshed the row first.
    """
    rowcount = _execute(
        _UPDATE_TOKEN,
        {
            "id": account_id,
            "access_token": access_token,
            "token_expires_at": token_expires_at,
            "refresh_token": refresh_token,
            "expected_version": expected_version,
        },
    )
    logger.debug("Token update for account %s affected %d row(s)", account_id, rowcount)
    return rowcount == 1


def set_account_name(account_id: str, account_name: str) -> None:
    _execute(
        "UPDATE connected_gbp SET gbp_account_name = %(name)s, updated_at = NOW() WHERE id = %(id)s",
        {"id": account_id, "name": account_name},
    )


def delete_connected_account(account_id: str) -> bool:
    return _execute("DELETE FROM connected_gbp WHERE id = %(id)s", {"id": account_id}) == 1


def get_oauth_client_config() -> Optional[OAuthClientConfig]:
    row = _fetch_one("SELECT value FROM admin_settings WHERE key = %(key)s", {"key": OAUTH_SETTINGS_KEY})
    value = (row or {}).get("value") or {}
    if not value.get("client_id") or not value.get("client_secret"):
        return None
    return OAuthClientConfig(client_id=value["client_id"], client_secret=value["client_secret"])


def get_business_record(business_id: str) -> Optional[BusinessRecord]:
    row = _fetch_one(
        """
        SELECT id, name, phone, website, address, google_place_id, gbp_connected, gbp_location_id
        FROM businesses WHERE id = %(id)s
        """,
        {"id": business_id},
    )
    if not row:
        return None
    return BusinessRecord(
        id=str(row["id"]),
        name=row.get("name"),
        phone=row.get("phone"),
        website=row.get("website"),
        address=row.get("address") or {},
        google_place_id=row.get("google_place_id"),
        gbp_connected=bool(row.get("gbp_connected")),
        gbp_location_id=row.get("gbp_location_id"),
    )


def save_profile_snapshot(business_id: str, snapshot: Dict[str, Any]) -> bool:
    """Replace the stored snapshot for a business. Returns False if no row matched."""
    rowcount = _execute(
        "UPDATE businesses SET gbp_data = %(data)s, updated_at = NOW() WHERE id = %(id)s",
        {"id": business_id, "data": extras.Json(snapshot)},
    )
    return rowcount == 1


def get_profile_snapshot(business_id: str) -> Optional[Dict[str, Any]]:
    row = _fetch_one("SELECT gbp_data FROM businesses WHERE id = %(id)s", {"id": business_id})
    data = (row or {}).get("gbp_data")
    return data or None


def save_score_breakdown(business_id: str, breakdown: Dict[str, Any]) -> bool:
    rowcount = _execute(
        """
        UPDATE businesses SET
            gbp_score = %(breakdown)s,
            audit_score = %(overall)s,
            last_audit_at = NOW(),
            updated_at = NOW()
        WHERE id = %(id)s
        """,
        {"id": business_id, "breakdown": extras.Json(breakdown), "overall": breakdown.get("overall_score")},
    )
    return rowcount == 1


_UPSERT_CONNECTED_ACCOUNT = """
INSERT INTO connected_gbp (
    user_id,
    google_account_id,
    google_email,
    access_token,
    refresh_token,
    token_expires_at,
    account_name,
    gbp_account_name,
    location_name,
    location_id,
    place_id,
    updated_at
) VALUES (
    %(user_id)s,
    %(google_account_id)s,
    %(google_email)s,
    %(access_token)s,
    %(refresh_token)s,
    %(token_expires_at)s,
    %(account_name)s,
    %(gbp_account_name)s,
    %(location_name)s,
    %(location_id)s,
    %(place_id)s,
    NOW()
)
ON CONFLICT (user_id, location_id) DO UPDATE SET
    google_account_id = EXCLUDED.google_account_id,
    google_email = EXCLUDED.google_email,
    access_token = EXCLUDED.access_token,
    refresh_token = COALESCE(EXCLUDED.refresh_token, connected_gbp.refresh_token),
    token_expires_at = EXCLUDED.token_expires_at,
    account_name = EXCLUDED.account_name,
    gbp_account_name = EXCLUDED.gbp_account_name,
    location_name = EXCLUDED.location_name,
    place_id = COALESCE(EXCLUDED.place_id, connected_gbp.place_id),
    version = connected_gbp.version + 1,
    updated_at = NOW()
RETURNING id;
"""


def upsert_connected_account(row: Dict[str, Any]) -> str:
    """Persist a connected account, keeping any previously issued refresh credential."""
    if not row.get("user_id") or not row.get("location_id"):
        raise ValueError("user_id and location_id are required for upsert")

    params = {key: row.get(key) for key in (
        "user_id",
        "google_account_id",
        "google_email",
        "access_token",
        "refresh_token",
        "token_expires_at",
        "account_name",
        "gbp_account_name",
        "location_name",
        "location_id",
        "place_id",
    )}
    result = _fetch_one(_UPSERT_CONNECTED_ACCOUNT, params)
    logger.debug("Upserted connected account for location %s", params["location_id"])
    return str(result["id"])


_UPSERT_BUSINESS = """
INSERT INTO businesses (
    user_id,
    name,
    google_place_id,
    address,
    phone,
    website,
    categories,
    gbp_connected,
    gbp_location_id,
    updated_at
) VALUES (
    %(user_id)s,
    %(name)s,
    %(google_place_id)s,
    %(address)s,
    %(phone)s,
    %(website)s,
    %(categories)s,
    TRUE,
    %(gbp_location_id)s,
    NOW()
)
ON CONFLICT (user_id, gbp_location_id) DO UPDATE SET
    name = EXCLUDED.name,
    google_place_id = COALESCE(EXCLUDED.google_place_id, businesses.google_place_id),
    address = EXCLUDED.address,
    phone = EXCLUDED.phone,
    website = EXCLUDED.website,
    categories = EXCLUDED.categories,
    gbp_connected = TRUE,
    updated_at = NOW()
RETURNING id;
"""


def upsert_business_for_location(row: Dict[str, Any]) -> str:
    if not row.get("user_id") or not row.get("name") or not row.get("gbp_location_id"):
        raise ValueError("user_id, name and gbp_location_id are required for upsert")

    params = {
        "user_id": row["user_id"],
        "name": row["name"],
        "google_place_id": row.get("google_place_id"),
        "address": extras.Json(row.get("address") or {}),
        "phone": row.get("phone"),
        "website": row.get("website"),
        "categories": list(row.get("categories") or []),
        "gbp_location_id": row["gbp_location_id"],
    }
    result = _fetch_one(_UPSERT_BUSINESS, params)
    logger.debug("Upserted business %s for location %s", params["name"], params["gbp_location_id"])
    return str(result["id"])
