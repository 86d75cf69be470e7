"""Concurrent, paginated collection of one location's profile resources.

Every resource kind is fetched independently on a bounded thread pool and
ends up as a ``ResourceResult``: either the union of all its pages or a failure
reason. One failing resource never aborts the others, and a sync that runs out
of time keeps whatever already completed.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests
from dateutil.relativedelta import relativedelta

from gbp_sync.core.config import Settings, get_settings
from gbp_sync.core.errors import ResourceFetchFailed
from gbp_sync.etl.scoring import round_half_up
from gbp_sync.models import LocationRef, PartialResults, RatingSummary, ResourceKind, ResourceResult
from gbp_sync.vendors import google_places
from gbp_sync.vendors.business_profile import BusinessProfileClient, BusinessProfileError

logger = logging.getLogger(__name__)

PAGE_SIZES = {
    ResourceKind.REVIEWS: 50,
    ResourceKind.MEDIA: 100,
    ResourceKind.POSTS: 100,
    ResourceKind.PRODUCTS: 100,
    ResourceKind.QUESTIONS: 50,
}

PERFORMANCE_METRICS = (
    "WEBSITE_CLICKS",
    "CALL_CLICKS",
    "BUSINESS_DIRECTION_REQUESTS",
    "BUSINESS_BOOKINGS",
    "BUSINESS_CONVERSATIONS",
    "BUSINESS_FOOD_ORDERS",
)

_METRIC_TOTAL_KEYS = {
    "WEBSITE_CLICKS": "website_clicks",
    "CALL_CLICKS": "calls",
    "BUSINESS_DIRECTION_REQUESTS": "directions",
    "BUSINESS_BOOKINGS": "bookings",
    "BUSINESS_CONVERSATIONS": "messages",
    "BUSINESS_FOOD_ORDERS": "food_orders",
}

STAR_VALUES = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}

Page = Dict[str, Any]


def paginate(
    fetch_page: Callable[[Optional[str]], Page],
    items_key: str,
    max_pages: int,
    label: str = "resource",
) -> Tuple[List[Any], Page]:
    """Follow ``nextPageToken`` cursors and return (all items, first page).

    Stops when no cursor is returned, when a page echoes the cursor it was
    requested with, or after ``max_pages`` pages, whichever comes first.
    """
    items: List[Any] = []
    first_page: Optional[Page] = None
    page_token: Optional[str] = None
    pages = 0

    while pages < max_pages:
        payload = fetch_page(page_token)
        pages += 1
        if first_page is None:
            first_page = payload

        page_items = payload.get(items_key) or []
        if not isinstance(page_items, list):
            raise BusinessProfileError(f"{label} page {pages}: '{items_key}' is not a list")
        items.extend(page_items)
        logger.info("%s page %d: fetched %d, total so far: %d", label, pages, len(page_items), len(items))

        next_token = payload.get("nextPageToken")
        if not next_token:
            break
        if next_token == page_token:
            logger.warning("%s: page %d echoed its own cursor; stopping", label, pages)
            break
        page_token = next_token
    else:
        logger.warning("%s: stopped at the %d-page ceiling with more pages pending", label, max_pages)

    return items, first_page or {}


def _first_present(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _metric_value(raw: Any) -> int:
    if raw is None:
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def _format_date(parts: Dict[str, Any]) -> Optional[str]:
    try:
        return f"{int(parts['year']):04d}-{int(parts['month']):02d}-{int(parts['day']):02d}"
    except (KeyError, TypeError, ValueError):
        return None


def _dated_series(dated_values: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    series = []
    for entry in dated_values or []:
        if not isinstance(entry, dict):
            continue
        day = _format_date(entry.get("date") or {})
        if day:
            series.append({"date": day, "value": _metric_value(entry.get("value"))})
    return series


def _iter_multi_series(payload: Dict[str, Any]) -> Iterable[Tuple[str, List[Dict[str, Any]]]]:
    """Yield (metric, dated values) from either shape the multi-metric endpoint returns."""
    for block in payload.get("multiDailyMetricTimeSeries") or []:
        nested = block.get("dailyMetricTimeSeries")
        if isinstance(nested, list):
            for series in nested:
                yield series.get("dailyMetric"), (series.get("timeSeries") or {}).get("datedValues") or []
        elif block.get("dailyMetric"):
            yield block["dailyMetric"], ((nested or {}).get("timeSeries") or {}).get("datedValues") or []


def assemble_performance(
    series: Dict[str, List[Dict[str, Any]]],
    start: date,
    end: date,
    source: str,
) -> Dict[str, Any]:
    totals = {metric: sum(point["value"] for point in points) for metric, points in series.items()}
    block: Dict[str, Any] = {
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "source": source,
        "time_series": series,
        "totals": totals,
    }
    for metric, key in _METRIC_TOTAL_KEYS.items():
        block[key] = totals.get(metric, 0)
    block["total_interactions"] = sum(block[key] for key in _METRIC_TOTAL_KEYS.values())
    return block


def rating_from_reviews(reviews: Iterable[Dict[str, Any]]) -> Tuple[Optional[float], Dict[str, int]]:
    """Star-weighted average (one decimal) and distribution of the fetched reviews."""
    distribution = {name: 0 for name in reversed(list(STAR_VALUES))}
    total = 0
    rated = 0
    for review in reviews:
        star = review.get("starRating") if isinstance(review, dict) else None
        if star not in STAR_VALUES:
            continue
        distribution[star] += 1
        total += STAR_VALUES[star]
        rated += 1
    average = round_half_up(total / rated * 10) / 10 if rated else None
    return average, distribution


class Aggregator:
    def __init__(
        self,
        client_factory: Callable[..., BusinessProfileClient] = BusinessProfileClient,
        settings: Optional[Settings] = None,
        places_lookup: Callable[..., Tuple[Optional[float], Optional[int]]] = google_places.public_rating,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._client_factory = client_factory
        self._settings = settings
        self._places_lookup = places_lookup
        self._today = today or date.today

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def fetch_all(self, access_token: str, location: LocationRef, place_id: Optional[str] = None) -> PartialResults:
        settings = self.settings
        client = self._client_factory(access_token, timeout=settings.http_timeout_seconds)
        fetchers = {
            ResourceKind.REVIEWS: self._fetch_reviews,
            ResourceKind.MEDIA: self._fetch_media,
            ResourceKind.POSTS: self._fetch_posts,
            ResourceKind.PRODUCTS: self._fetch_products,
            ResourceKind.SERVICES: self._fetch_services,
            ResourceKind.QUESTIONS: self._fetch_questions,
            ResourceKind.PROFILE: self._fetch_profile,
            ResourceKind.ATTRIBUTES: self._fetch_attributes,
            ResourceKind.PERFORMANCE: self._fetch_performance,
        }

        logger.info("Fetching %d resources for %s", len(fetchers), location.parent)
        executor = ThreadPoolExecutor(max_workers=max(1, min(settings.max_workers, len(fetchers))))
        futures = {executor.submit(self._run, kind, fetcher, client, location): kind for kind, fetcher in fetchers.items()}
        try:
            done, not_done = wait(futures, timeout=settings.sync_timeout_seconds)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: Dict[ResourceKind, ResourceResult] = {}
        for future in done:
            result = future.result()
            results[result.kind] = result
        for future in not_done:
            kind = futures[future]
            future.cancel()
            logger.warning("%s fetch abandoned after %.0fs", kind.value, settings.sync_timeout_seconds)
            results[kind] = ResourceResult.failed(kind, "timed out")

        partial = PartialResults(location=location, results=results)
        partial.rating = self.reconcile_rating(partial.get(ResourceKind.REVIEWS), place_id)
        failed = [kind.value for kind in partial.failed_kinds]
        if failed:
            logger.warning("Sync of %s finished with failed resources: %s", location.parent, ", ".join(failed))
        return partial

    def _run(self, kind: ResourceKind, fetcher: Callable, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        try:
            return fetcher(client, location)
        except (BusinessProfileError, ResourceFetchFailed) as exc:
            logger.warning("%s fetch failed: %s", kind.value, exc)
            return ResourceResult.failed(kind, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error fetching %s: %s", kind.value, exc)
            return ResourceResult.failed(kind, f"unexpected error: {exc}")

    def _paginate(self, kind: ResourceKind, fetch_page: Callable[[Optional[str]], Page], items_key: str) -> Tuple[List[Any], Page]:
        return paginate(fetch_page, items_key, self.settings.max_pages, label=kind.value)

    # Paginated collections

    def _fetch_reviews(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        size = PAGE_SIZES[ResourceKind.REVIEWS]
        reviews, first_page = self._paginate(
            ResourceKind.REVIEWS,
            lambda token: client.list_reviews(location.parent, token, size),
            "reviews",
        )
        meta = {
            "average_rating": _first_present(first_page, "averageRating", "average_rating"),
            "total_review_count": _first_present(first_page, "totalReviewCount", "total_review_count"),
        }
        return ResourceResult.succeeded(ResourceKind.REVIEWS, reviews, meta)

    def _fetch_media(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        size = PAGE_SIZES[ResourceKind.MEDIA]
        media, _ = self._paginate(ResourceKind.MEDIA, lambda token: client.list_media(location.parent, token, size), "mediaItems")
        return ResourceResult.succeeded(ResourceKind.MEDIA, media)

    def _fetch_posts(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        size = PAGE_SIZES[ResourceKind.POSTS]
        posts, _ = self._paginate(ResourceKind.POSTS, lambda token: client.list_local_posts(location.parent, token, size), "localPosts")
        return ResourceResult.succeeded(ResourceKind.POSTS, posts)

    def _fetch_questions(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        size = PAGE_SIZES[ResourceKind.QUESTIONS]
        questions, _ = self._paginate(
            ResourceKind.QUESTIONS,
            lambda token: client.list_questions(location.parent, token, size),
            "questions",
        )
        return ResourceResult.succeeded(ResourceKind.QUESTIONS, questions)

    def _fetch_products(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        """Products live behind different APIs depending on the business type; first one that answers wins."""
        size = PAGE_SIZES[ResourceKind.PRODUCTS]
        attempts = []
        if location.account_name:
            attempts.append(("v4", lambda token: client.list_products(location.parent, token, size), "products"))
            attempts.append(("catalog", lambda token: client.list_catalog_products(location.parent, token, size), "products"))
        attempts.append((
            "product_posts",
            lambda token: client.list_local_posts(location.parent, token, size, topic_type="PRODUCT"),
            "localPosts",
        ))

        reasons = []
        for source, fetch_page, items_key in attempts:
            try:
                items, first_page = self._paginate(ResourceKind.PRODUCTS, fetch_page, items_key)
            except BusinessProfileError as exc:
                logger.info("products via %s unavailable: %s", source, exc)
                reasons.append(f"{source}: {exc}")
                continue
            if source == "catalog" and not items:
                items = first_page.get("localProducts") or []
            if source == "product_posts":
                items = [post for post in items if isinstance(post, dict) and post.get("topicType") == "PRODUCT"]
            logger.info("Fetched %d products via %s", len(items), source)
            return ResourceResult.succeeded(ResourceKind.PRODUCTS, items, {"source": source})

        raise ResourceFetchFailed(ResourceKind.PRODUCTS.value, "; ".join(reasons))

    # Single-request resources

    def _fetch_services(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        attempts = []
        if location.account_name:
            attempts.append(("v4", lambda: client.get_service_list_v4(location.parent)))
        attempts.append(("v1", lambda: client.get_service_list(location.location_id)))

        reasons = []
        answered = None
        for source, fetch in attempts:
            try:
                payload = fetch()
            except BusinessProfileError as exc:
                logger.info("services via %s unavailable: %s", source, exc)
                reasons.append(f"{source}: {exc}")
                continue
            services = (payload.get("serviceList") or {}).get("services") or payload.get("services") or []
            if services:
                logger.info("Fetched %d services via %s", len(services), source)
                return ResourceResult.succeeded(ResourceKind.SERVICES, services, {"source": source})
            answered = answered or source

        if answered:
            return ResourceResult.succeeded(ResourceKind.SERVICES, [], {"source": answered})
        raise ResourceFetchFailed(ResourceKind.SERVICES.value, "; ".join(reasons))

    def _fetch_profile(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        return ResourceResult.succeeded(ResourceKind.PROFILE, client.get_location(location.location_id))

    def _fetch_attributes(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        payload = client.get_attributes(location.location_id)
        return ResourceResult.succeeded(ResourceKind.ATTRIBUTES, payload.get("attributes") or [])

    def _fetch_performance(self, client: BusinessProfileClient, location: LocationRef) -> ResourceResult:
        end = self._today()
        start = end - relativedelta(months=self.settings.performance_lookback_months)

        try:
            payload = client.fetch_multi_daily_metrics(location.location_id, PERFORMANCE_METRICS, start, end)
        except BusinessProfileError as exc:
            logger.warning("Multi-metric performance request rejected (%s); fetching metrics one by one", exc)
        else:
            series = {metric: _dated_series(values) for metric, values in _iter_multi_series(payload) if metric}
            return ResourceResult.succeeded(ResourceKind.PERFORMANCE, assemble_performance(series, start, end, "multi"))

        series = {}
        for metric in PERFORMANCE_METRICS:
            try:
                payload = client.get_daily_metric(location.location_id, metric, start, end)
            except BusinessProfileError as exc:
                logger.warning("Performance metric %s unavailable: %s", metric, exc)
                continue
            values = (payload.get("timeSeries") or {}).get("datedValues") or (
                ((payload.get("dailyMetricTimeSeries") or {}).get("timeSeries") or {}).get("datedValues")
            )
            series[metric] = _dated_series(values)

        if not series:
            raise ResourceFetchFailed(ResourceKind.PERFORMANCE.value, "every metric request failed")
        return ResourceResult.succeeded(ResourceKind.PERFORMANCE, assemble_performance(series, start, end, "single"))

    # Rating reconciliation

    def reconcile_rating(self, reviews_result: ResourceResult, place_id: Optional[str] = None) -> RatingSummary:
        """Resolve rating and review count: platform aggregate, then fetched reviews, then public Places data."""
        reviews = reviews_result.items if reviews_result.ok and reviews_result.items else []
        stats = reviews_result.meta if reviews_result.ok else {}
        computed_rating, distribution = rating_from_reviews(reviews)

        summary = RatingSummary(distribution=distribution)
        average: Optional[float] = None
        total: Optional[int] = None

        if stats.get("average_rating") is not None:
            average = float(stats["average_rating"])
            summary.source["average_rating"] = "platform"
        if stats.get("total_review_count") is not None:
            total = int(stats["total_review_count"])
            summary.source["total_reviews"] = "platform"

        if average is None and computed_rating is not None:
            average = computed_rating
            summary.source["average_rating"] = "reviews"
        if total is None and reviews:
            total = len(reviews)
            summary.source["total_reviews"] = "reviews"

        api_key = self.settings.places_api_key
        if (average is None or total is None) and place_id and api_key:
            try:
                place_rating, place_total = self._places_lookup(place_id, api_key)
            except (google_places.GooglePlacesError, requests.RequestException) as exc:
                logger.warning("Places rating lookup failed for %s: %s", place_id, exc)
            else:
                if average is None and place_rating is not None:
                    average = place_rating
                    summary.source["average_rating"] = "places"
                if total is None and place_total is not None:
                    total = place_total
                    summary.source["total_reviews"] = "places"

        summary.average_rating = average if average is not None else 0.0
        summary.total_reviews = total if total is not None else 0
        summary.source.setdefault("average_rating", "none")
        summary.source.setdefault("total_reviews", "none")
        logger.info(
            "Rating %.1f (%s), reviews %d (%s)",
            summary.average_rating,
            summary.source["average_rating"],
            summary.total_reviews,
            summary.source["total_reviews"],
        )
        return summary


def fetch_all(access_token: str, location: LocationRef, place_id: Optional[str] = None) -> PartialResults:
    return Aggregator().fetch_all(access_token, location, place_id=place_id)
