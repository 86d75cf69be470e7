"""Sync a business's profile snapshot and score it."""

import argparse
import logging
from datetime import datetime
from typing import Optional

from gbp_sync.core import db
from gbp_sync.core.errors import (
    BusinessNotConnected,
    BusinessNotFound,
    PersistenceFailure,
    ReauthorizationRequired,
    SnapshotNotFound,
    SyncError,
)
from gbp_sync.core.tokens import TokenManager, get_token_manager
from gbp_sync.etl.aggregate import Aggregator
from gbp_sync.etl.scoring import ScoreBreakdown, score
from gbp_sync.etl.transform import normalize
from gbp_sync.models import BusinessIdentity, BusinessRecord, LocationRef, ProfileSnapshot

logger = logging.getLogger(__name__)


def _load_business(business_id: str, store) -> BusinessRecord:
    record = store.get_business_record(business_id)
    if record is None:
        raise BusinessNotFound(f"Business {business_id} not found")
    return record


def sync_business(
    business_id: str,
    *,
    store=db,
    token_manager: Optional[TokenManager] = None,
    aggregator: Optional[Aggregator] = None,
) -> ProfileSnapshot:
    """Refresh credentials if needed, fetch every resource, normalize and persist the snapshot.

    Individual resource failures are recorded on the snapshot; only a missing
    business, a missing connection, a rejected refresh or a failed snapshot
    write abort the sync.
    """
    record = _load_business(business_id, store)
    if not record.gbp_connected or not record.gbp_location_id:
        raise BusinessNotConnected(f"Business {business_id} is not connected to a Google Business Profile location")

    account = store.get_connected_account_for_location(record.gbp_location_id)
    if account is None:
        raise ReauthorizationRequired("No GBP tokens found. Please reconnect your Google Business Profile.")

    manager = token_manager or get_token_manager()
    access_token = manager.ensure_valid_access_credential(account)
    account_name = manager.resolve_account_name(account, access_token)

    location = LocationRef(account_name=account_name, location_id=record.gbp_location_id)
    place_id = record.google_place_id or account.place_id
    logger.info("Syncing business %s from %s", business_id, location.parent)
    raw = (aggregator or Aggregator()).fetch_all(access_token, location, place_id=place_id)
    snapshot = normalize(raw)

    try:
        saved = store.save_profile_snapshot(business_id, snapshot.to_dict())
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to save snapshot for business %s: %s", business_id, exc)
        raise PersistenceFailure(f"Failed to save profile data for business {business_id}") from exc
    if not saved:
        raise PersistenceFailure(f"Business {business_id} disappeared before its profile data was saved")

    logger.info(
        "Synced business %s: %d reviews, %d photos, %d posts, %d products, %d services, %d questions",
        business_id,
        snapshot.total_reviews,
        snapshot.total_photos,
        snapshot.total_posts,
        snapshot.total_products,
        snapshot.total_services,
        snapshot.total_questions,
    )
    return snapshot


def score_business(
    business_id: str,
    snapshot: Optional[ProfileSnapshot] = None,
    *,
    store=db,
    as_of: Optional[datetime] = None,
) -> ScoreBreakdown:
    """Score the given snapshot, or the stored one, and persist the breakdown."""
    record = _load_business(business_id, store)
    if snapshot is None:
        data = store.get_profile_snapshot(business_id)
        if not data:
            raise SnapshotNotFound(f"No synced profile data for business {business_id}; run a sync first")
        snapshot = ProfileSnapshot.from_dict(data)

    breakdown = score(snapshot, BusinessIdentity.from_record(record), as_of=as_of)

    try:
        saved = store.save_score_breakdown(business_id, breakdown.to_dict())
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to save score for business %s: %s", business_id, exc)
    else:
        if not saved:
            logger.warning("Score for business %s was not saved; no matching row", business_id)
    return breakdown


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync a business's Google Business Profile data")
    parser.add_argument("business_id", help="Business record id")
    parser.add_argument("--no-score", dest="no_score", action="store_true", help="Skip computing the health score")
    return parser


def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        snapshot = sync_business(args.business_id)
        if not args.no_score:
            breakdown = score_business(args.business_id, snapshot)
            logger.info("Health score for %s: %d (%s)", args.business_id, breakdown.overall_score, breakdown.status)
    except ReauthorizationRequired as exc:
        logger.error("Reconnect required: %s", exc)
        return 2
    except SyncError as exc:
        logger.error("Sync failed: %s", exc)
        return 1

    if snapshot.failed_resources:
        logger.warning("Resources not fetched: %s", ", ".join(snapshot.failed_resources))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
