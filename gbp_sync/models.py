"""Core data models shared by the sync pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(slots=True)
class ConnectedAccount:
    """Stored OAuth credential pair for one connected profile location."""

    id: str
    location_id: Optional[str] = None
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None
    account_name: Optional[str] = None
    google_email: Optional[str] = None
    user_id: Optional[str] = None
    place_id: Optional[str] = None
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        if not self.access_token:
            return True
        if self.token_expires_at is None:
            return False
        return now >= self.token_expires_at


@dataclass(frozen=True)
class OAuthClientConfig:
    client_id: str
    client_secret: str = field(repr=False)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str = field(repr=False)
    expires_in: int = 3600
    refresh_token: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class LocationRef:
    """Addresses one location, optionally scoped under its account."""

    account_name: Optional[str]
    location_id: str

    @property
    def parent(self) -> str:
        if self.account_name:
            return f"{self.account_name}/{self.location_id}"
        return self.location_id

    @property
    def account_number(self) -> Optional[str]:
        if not self.account_name:
            return None
        return self.account_name.replace("accounts/", "", 1)

    @property
    def location_number(self) -> str:
        return self.location_id.replace("locations/", "", 1)


@dataclass(slots=True)
class BusinessRecord:
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Dict[str, Any] = field(default_factory=dict)
    google_place_id: Optional[str] = None
    gbp_connected: bool = False
    gbp_location_id: Optional[str] = None


@dataclass(frozen=True)
class BusinessIdentity:
    """Static identity fields the dashboard already knows about a business."""

    name: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[Dict[str, Any]] = None

    @classmethod
    def from_record(cls, record: BusinessRecord) -> "BusinessIdentity":
        return cls(name=record.name, phone=record.phone, website=record.website, address=record.address or None)


class ResourceKind(str, Enum):
    REVIEWS = "reviews"
    MEDIA = "media"
    POSTS = "posts"
    PRODUCTS = "products"
    SERVICES = "services"
    QUESTIONS = "questions"
    PROFILE = "profile"
    ATTRIBUTES = "attributes"
    PERFORMANCE = "performance"


@dataclass(frozen=True)
class ResourceResult:
    """Outcome of fetching one resource kind: either items or a failure reason."""

    kind: ResourceKind
    items: Any = None
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(cls, kind: ResourceKind, items: Any, meta: Optional[Dict[str, Any]] = None) -> "ResourceResult":
        return cls(kind=kind, items=items, meta=meta or {})

    @classmethod
    def failed(cls, kind: ResourceKind, reason: str) -> "ResourceResult":
        return cls(kind=kind, error=reason or "unknown error")


@dataclass(slots=True)
class RatingSummary:
    average_rating: float = 0.0
    total_reviews: int = 0
    distribution: Dict[str, int] = field(default_factory=dict)
    source: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PartialResults:
    """Everything the aggregator gathered for one location, failures included."""

    location: LocationRef
    results: Dict[ResourceKind, ResourceResult] = field(default_factory=dict)
    rating: RatingSummary = field(default_factory=RatingSummary)

    def get(self, kind: ResourceKind) -> ResourceResult:
        return self.results.get(kind) or ResourceResult.failed(kind, "not fetched")

    def items(self, kind: ResourceKind, default: Any = None) -> Any:
        result = self.get(kind)
        if not result.ok or result.items is None:
            return default
        return result.items

    @property
    def failed_kinds(self) -> List[ResourceKind]:
        return [kind for kind in ResourceKind if not self.get(kind).ok]


@dataclass(slots=True)
class ProfileSnapshot:
    """Normalized, point-in-time aggregate of a location's remote data."""

    location_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Dict[str, Any] = field(default_factory=dict)
    primary_category: Optional[str] = None
    additional_categories: List[str] = field(default_factory=list)
    regular_hours: Dict[str, Any] = field(default_factory=dict)
    attributes: List[Dict[str, Any]] = field(default_factory=list)
    profile_extras: Dict[str, Any] = field(default_factory=dict)
    reviews: List[Dict[str, Any]] = field(default_factory=list)
    photos: List[Dict[str, Any]] = field(default_factory=list)
    posts: List[Dict[str, Any]] = field(default_factory=list)
    products: List[Dict[str, Any]] = field(default_factory=list)
    services: List[Dict[str, Any]] = field(default_factory=list)
    questions: List[Dict[str, Any]] = field(default_factory=list)
    performance: Dict[str, Any] = field(default_factory=dict)
    average_rating: float = 0.0
    total_reviews: int = 0
    rating_distribution: Dict[str, int] = field(default_factory=dict)
    rating_source: Dict[str, str] = field(default_factory=dict)
    total_photos: int = 0
    total_posts: int = 0
    total_products: int = 0
    total_services: int = 0
    total_questions: int = 0
    failed_resources: List[str] = field(default_factory=list)
    synced_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProfileSnapshot":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in (data or {}).items() if key in known})
