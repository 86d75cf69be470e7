"""HTTP entrypoint the dashboard calls to sync, score and connect profiles."""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Flask, jsonify, request

from gbp_sync.core.config import get_settings
from gbp_sync.core.errors import (
    AuthorizationFailed,
    BusinessNotConnected,
    BusinessNotFound,
    OAuthNotConfigured,
    PersistenceFailure,
    ReauthorizationRequired,
    SnapshotNotFound,
    SyncError,
)
from gbp_sync.jobs.connect_account import connect_account, disconnect_account
from gbp_sync.jobs.sync_business import score_business, sync_business

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

_STATUS_BY_ERROR = (
    (ReauthorizationRequired, 401),
    (BusinessNotFound, 404),
    (SnapshotNotFound, 404),
    (BusinessNotConnected, 400),
    (AuthorizationFailed, 400),
    (OAuthNotConfigured, 500),
    (PersistenceFailure, 500),
)


def _error_response(exc: SyncError) -> Any:
    status = next((code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)), 500)
    body: Dict[str, Any] = {"error": str(exc)}
    if isinstance(exc, ReauthorizationRequired):
        body["needs_reconnect"] = True
    if status >= 500:
        logger.error("Request failed: %s", exc)
    else:
        logger.info("Request rejected (%d): %s", status, exc)
    return jsonify(body), status


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "server_port": settings.server_port,
                "places_fallback": bool(settings.places_api_key),
            }
        ),
        200,
    )


@app.post("/businesses/<business_id>/sync")
def sync(business_id: str) -> Any:
    """
    Sync a business's profile snapshot.
    Optional JSON: {"score": false} skips scoring.
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    try:
        snapshot = sync_business(business_id)
        breakdown = None
        if payload.get("score", True):
            breakdown = score_business(business_id, snapshot).to_dict()
    except SyncError as exc:
        return _error_response(exc)

    return jsonify({"data": {"snapshot": snapshot.to_dict(), "score": breakdown}}), 200


@app.get("/businesses/<business_id>/score")
def business_score(business_id: str) -> Any:
    try:
        breakdown = score_business(business_id)
    except SyncError as exc:
        return _error_response(exc)
    return jsonify({"data": breakdown.to_dict()}), 200


@app.get("/oauth/callback")
def oauth_callback() -> Any:
    """Delegated authorization redirect target. ``state`` carries the dashboard user id."""
    error = request.args.get("error")
    if error:
        return jsonify({"error": f"authorization denied: {error}"}), 400

    code = request.args.get("code")
    user_id = request.args.get("state")
    if not code or not user_id:
        return jsonify({"error": "code and state are required"}), 400

    try:
        linked = connect_account(code, get_settings().oauth_redirect_uri or None, user_id)
    except SyncError as exc:
        return _error_response(exc)
    return jsonify({"data": {"locations_linked": linked}}), 200


@app.delete("/accounts/<account_id>")
def disconnect(account_id: str) -> Any:
    if not disconnect_account(account_id):
        return jsonify({"error": "account not found"}), 404
    return jsonify({"data": {"status": "disconnected"}}), 200


def main() -> None:
    port = get_settings().server_port
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
