"""Client utilities for the public Google Places API."""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import requests

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"
RATING_FIELDS = ("rating", "user_ratings_total")


class GooglePlacesError(RuntimeError):
    """Raised when the Places API returns a non-successful response."""


def place_details(place_id: str, api_key: str, fields: Iterable[str] = RATING_FIELDS, timeout: float = 10) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": ",".join(fields)}
    response = _SESSION.get(f"{_BASE_URL}/details/json", params=params, timeout=timeout)
    response.raise_for_status()
    payload = response.json()
    status = payload.get("status")
    if status not in {"OK", "ZERO_RESULTS"}:
        logger.error("place_details failed: status=%s, error_message=%s", status, payload.get("error_message"))
        raise GooglePlacesError(payload.get("error_message") or status)
    return payload.get("result", {})


def public_rating(place_id: str, api_key: str, timeout: float = 10) -> Tuple[Optional[float], Optional[int]]:
    """Return the public (rating, review count) pair for a place; either may be None."""
    result = place_details(place_id, api_key, fields=RATING_FIELDS, timeout=timeout)
    rating = result.get("rating")
    total = result.get("user_ratings_total")
    return (
        float(rating) if rating is not None else None,
        int(total) if total is not None else None,
    )
