"""Reshape raw per-resource payloads into a single ProfileSnapshot."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from gbp_sync.core.errors import NormalizationAnomaly
from gbp_sync.models import PartialResults, ProfileSnapshot, ResourceKind

logger = logging.getLogger(__name__)

_SERVICE_TYPE_PREFIX = "job_type_id:"
_PROFILE_EXTRA_KEYS = ("openInfo", "specialHours", "moreHours", "serviceItems", "serviceArea", "labels")


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _dicts_only(kind: ResourceKind, items: Any) -> List[Dict[str, Any]]:
    if not isinstance(items, list):
        if items:
            logger.warning("%s payload is not a list; ignoring it", kind.value)
        return []
    kept = [item for item in items if isinstance(item, dict)]
    dropped = len(items) - len(kept)
    if dropped:
        logger.warning("Dropped %d malformed %s item(s)", dropped, kind.value)
    return kept


def humanize_service_type(service_type_id: str) -> str:
    """``job_type_id:search_engine_optimization`` -> ``Search Engine Optimization``."""
    label = service_type_id
    if label.lower().startswith(_SERVICE_TYPE_PREFIX):
        label = label[len(_SERVICE_TYPE_PREFIX):]
    return " ".join(word.capitalize() for word in label.replace("_", " ").split())


def service_name(service: Dict[str, Any]) -> str:
    structured = _as_dict(service.get("structuredServiceItem"))
    if isinstance(structured.get("serviceTypeId"), str):
        name = humanize_service_type(structured["serviceTypeId"])
        if name:
            return name
    label = _as_dict(_as_dict(service.get("freeFormServiceItem")).get("label"))
    for candidate in (label.get("displayName"), service.get("displayName"), service.get("serviceName")):
        if candidate and isinstance(candidate, str):
            return candidate
    raise NormalizationAnomaly("service has no recognizable name")


def _service_description(service: Dict[str, Any]) -> str:
    label = _as_dict(_as_dict(service.get("freeFormServiceItem")).get("label"))
    return (
        _as_dict(service.get("structuredServiceItem")).get("description")
        or label.get("description")
        or service.get("description")
        or ""
    )


def normalize_services(services: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    normalized = []
    for index, service in enumerate(services, start=1):
        try:
            name = service_name(service)
        except NormalizationAnomaly as exc:
            name = f"Service {index}"
            logger.warning("Service %d: %s; using placeholder %r", index, exc, name)
        normalized.append({
            "name": name,
            "description": _service_description(service),
            "price": service.get("price"),
            "raw": service,
        })
    return normalized


def product_name(product: Dict[str, Any]) -> str:
    label = _as_dict(product.get("labels"))
    for candidate in (product.get("productName"), product.get("displayName"), label.get("displayName"), product.get("summary"), product.get("name")):
        if candidate and isinstance(candidate, str):
            return candidate
    raise NormalizationAnomaly("product has no recognizable name")


def normalize_products(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    normalized = []
    for index, product in enumerate(products, start=1):
        try:
            name = product_name(product)
        except NormalizationAnomaly as exc:
            name = f"Product {index}"
            logger.warning("Product %d: %s; using placeholder %r", index, exc, name)
        media = product.get("media")
        normalized.append({
            "name": name,
            "description": product.get("productDescription") or product.get("description") or product.get("summary") or "",
            "media": media if isinstance(media, list) else [],
            "price": product.get("price"),
            "raw": product,
        })
    return normalized


def normalize_photos(media: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    photos = []
    for item in media:
        photo = dict(item)
        photo["category"] = item.get("category") or _as_dict(item.get("locationAssociation")).get("category")
        photos.append(photo)
    return photos


def _apply_profile(snapshot: ProfileSnapshot, location: Dict[str, Any]) -> None:
    if not isinstance(location, dict):
        logger.warning("Profile payload is not an object; leaving profile fields empty")
        return
    categories = _as_dict(location.get("categories"))
    snapshot.name = location.get("title") or None
    snapshot.description = _as_dict(location.get("profile")).get("description") or None
    snapshot.phone = _as_dict(location.get("phoneNumbers")).get("primaryPhone") or None
    snapshot.website = location.get("websiteUri") or None
    snapshot.address = _as_dict(location.get("storefrontAddress"))
    snapshot.primary_category = _as_dict(categories.get("primaryCategory")).get("displayName") or None
    snapshot.additional_categories = [
        category["displayName"]
        for category in _list(categories.get("additionalCategories"))
        if isinstance(category, dict) and category.get("displayName")
    ]
    snapshot.regular_hours = _as_dict(location.get("regularHours"))
    snapshot.profile_extras = {key: location[key] for key in _PROFILE_EXTRA_KEYS if location.get(key) is not None}


_COLLECTION_RULES: Dict[ResourceKind, Callable[[ProfileSnapshot, List[Dict[str, Any]]], None]] = {
    ResourceKind.REVIEWS: lambda snapshot, items: setattr(snapshot, "reviews", items),
    ResourceKind.MEDIA: lambda snapshot, items: setattr(snapshot, "photos", normalize_photos(items)),
    ResourceKind.POSTS: lambda snapshot, items: setattr(snapshot, "posts", items),
    ResourceKind.PRODUCTS: lambda snapshot, items: setattr(snapshot, "products", normalize_products(items)),
    ResourceKind.SERVICES: lambda snapshot, items: setattr(snapshot, "services", normalize_services(items)),
    ResourceKind.QUESTIONS: lambda snapshot, items: setattr(snapshot, "questions", items),
    ResourceKind.ATTRIBUTES: lambda snapshot, items: setattr(snapshot, "attributes", items),
}


def normalize(raw: PartialResults, synced_at: Optional[datetime] = None) -> ProfileSnapshot:
    """Build a snapshot from aggregated results. Failed resources become empty collections."""
    snapshot = ProfileSnapshot(location_id=raw.location.location_id)

    profile = raw.get(ResourceKind.PROFILE)
    if profile.ok:
        _apply_profile(snapshot, profile.items or {})

    for kind, apply in _COLLECTION_RULES.items():
        result = raw.get(kind)
        if result.ok:
            apply(snapshot, _dicts_only(kind, result.items))

    if not snapshot.services:
        service_items = _dicts_only(ResourceKind.SERVICES, snapshot.profile_extras.get("serviceItems") or [])
        if service_items:
            logger.info("Using %d service items from the location profile", len(service_items))
            snapshot.services = normalize_services(service_items)

    performance = raw.items(ResourceKind.PERFORMANCE, {})
    snapshot.performance = performance if isinstance(performance, dict) else {}

    snapshot.average_rating = raw.rating.average_rating
    snapshot.total_reviews = raw.rating.total_reviews
    snapshot.rating_distribution = dict(raw.rating.distribution)
    snapshot.rating_source = dict(raw.rating.source)

    snapshot.total_photos = len(snapshot.photos)
    snapshot.total_posts = len(snapshot.posts)
    snapshot.total_products = len(snapshot.products)
    snapshot.total_services = len(snapshot.services)
    snapshot.total_questions = len(snapshot.questions)

    snapshot.failed_resources = [kind.value for kind in raw.failed_kinds]
    snapshot.synced_at = (synced_at or datetime.now(timezone.utc)).astimezone(timezone.utc).isoformat()
    return snapshot
