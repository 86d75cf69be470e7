"""Weighted health score for a profile snapshot.

Eight sections are scored independently against their own cap. Each section's
contribution is ``round(percent * weight / 100)`` with
``percent = round(score / cap * 100)``, and the overall score is the sum of the
contributions, so it can always be recomputed from the breakdown alone.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from dateutil import parser as date_parser

from gbp_sync.models import BusinessIdentity, ProfileSnapshot

logger = logging.getLogger(__name__)

SECTION_WEIGHTS = {
    "profile_info": 20,
    "reviews": 20,
    "photos": 15,
    "posts": 15,
    "products": 10,
    "services": 5,
    "q_and_a": 10,
    "attributes": 5,
}

SECTION_CAPS = {
    "profile_info": 6,
    "reviews": 10,
    "photos": 6,
    "posts": 5,
    "products": 4,
    "services": 3,
    "q_and_a": 4,
    "attributes": 4,
}

SECTION_TITLES = {
    "profile_info": "Profile Info",
    "reviews": "Reviews",
    "photos": "Photos",
    "posts": "Posts",
    "products": "Products",
    "services": "Services",
    "q_and_a": "Q&A",
    "attributes": "Attributes",
}

EXCELLENT_THRESHOLD = 85
GOOD_THRESHOLD = 70
NEEDS_WORK_THRESHOLD = 50

STATUS_EXCELLENT = "excellent"
STATUS_GOOD = "good"
STATUS_NEEDS_WORK = "needs_work"
STATUS_CRITICAL = "critical"

RECENT_WINDOW = timedelta(days=30)

PAYMENT_KEYWORDS = ("pay_", "payment")
ACCESSIBILITY_KEYWORDS = ("wheelchair", "accessib")
AMENITY_KEYWORDS = ("wi_fi", "restroom", "amenit", "parking", "seating")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(slots=True)
class ScoreSection:
    key: str
    title: str
    max_score: int
    weight: int
    score: float = 0
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def percent(self) -> int:
        if self.max_score <= 0:
            return 0
        return round_half_up(self.score / self.max_score * 100)

    @property
    def contribution(self) -> int:
        return round_half_up(self.percent * self.weight / 100)

    def gap(self, issue: str, recommendation: Optional[str] = None) -> None:
        self.issues.append(issue)
        if recommendation and recommendation not in self.recommendations:
            self.recommendations.append(recommendation)

    def close(self, strength: str, progress: str) -> None:
        """A section without issues gets one recommendation: ``strength`` at full marks, ``progress`` otherwise."""
        if self.issues:
            return
        self.recommendations.append(strength if self.score >= self.max_score else progress)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "score": self.score,
            "max_score": self.max_score,
            "weight": self.weight,
            "percent": self.percent,
            "contribution": self.contribution,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "details": dict(self.details),
        }


@dataclass(slots=True)
class ScoreBreakdown:
    overall_score: int
    status: str
    sections: Dict[str, ScoreSection]
    as_of: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "status": self.status,
            "as_of": self.as_of,
            "sections": {key: section.to_dict() for key, section in self.sections.items()},
        }


def overall_from_sections(sections: Iterable[ScoreSection]) -> int:
    return sum(section.contribution for section in sections)


def classify(overall: int) -> str:
    if overall >= EXCELLENT_THRESHOLD:
        return STATUS_EXCELLENT
    if overall >= GOOD_THRESHOLD:
        return STATUS_GOOD
    if overall >= NEEDS_WORK_THRESHOLD:
        return STATUS_NEEDS_WORK
    return STATUS_CRITICAL


def _section(key: str) -> ScoreSection:
    return ScoreSection(key=key, title=SECTION_TITLES[key], max_score=SECTION_CAPS[key], weight=SECTION_WEIGHTS[key])


def _parse_time(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _count_recent(items: Iterable[Dict[str, Any]], since: datetime) -> int:
    count = 0
    for item in items:
        created = _parse_time(item.get("createTime"))
        if created is not None and created > since:
            count += 1
    return count


def _has_reply(review: Dict[str, Any]) -> bool:
    reply = review.get("reviewReply")
    return isinstance(reply, dict) and bool(reply.get("comment"))


def _is_owner_answer(answer: Any) -> bool:
    author = answer.get("author") if isinstance(answer, dict) else None
    return isinstance(author, dict) and author.get("type") == "MERCHANT"


def _resolve_as_of(snapshot: ProfileSnapshot, as_of: Optional[datetime]) -> datetime:
    resolved = as_of or _parse_time(snapshot.synced_at) or datetime.now(timezone.utc)
    if resolved.tzinfo is None:
        resolved = resolved.replace(tzinfo=timezone.utc)
    return resolved


def score_profile_info(snapshot: ProfileSnapshot, identity: BusinessIdentity) -> ScoreSection:
    section = _section("profile_info")
    checks = (
        ("has_name", snapshot.name or identity.name, "Business name is missing", None),
        (
            "has_description",
            snapshot.description,
            "Business description is missing",
            "Add a detailed business description with relevant keywords (750 characters recommended)",
        ),
        (
            "has_category",
            snapshot.primary_category,
            "Primary category is not set",
            "Set your primary business category and add relevant secondary categories",
        ),
        ("has_phone", snapshot.phone or identity.phone, "Phone number is missing", "Add your business phone number"),
        ("has_website", snapshot.website or identity.website, "Website URL is missing", "Add your business website URL"),
        (
            "has_address",
            snapshot.address or identity.address,
            "Business address is incomplete",
            "Complete your business address details",
        ),
    )
    for detail, value, issue, recommendation in checks:
        present = bool(value)
        section.details[detail] = present
        if present:
            section.score += 1
        else:
            section.gap(issue, recommendation)
    section.close(
        "Your core business information is complete; keep it up to date",
        "Core business information is in place; fill in the remaining details to complete it",
    )
    return section


def score_reviews(snapshot: ProfileSnapshot, as_of: datetime) -> ScoreSection:
    section = _section("reviews")
    reviews = snapshot.reviews
    rating = snapshot.average_rating or 0.0
    total = snapshot.total_reviews or 0
    replied = sum(1 for review in reviews if _has_reply(review))
    response_rate = round_half_up(replied / len(reviews) * 100) if reviews else 0
    recent = _count_recent(reviews, as_of - RECENT_WINDOW)

    if rating >= 4.5:
        section.score += 3
    elif rating >= 4.0:
        section.score += 2
    elif rating >= 3.5:
        section.score += 1
    elif rating > 0:
        section.gap(
            f"Average rating ({rating:.1f}) is below 3.5",
            "Focus on improving customer satisfaction to boost your rating",
        )
    else:
        section.gap("No rating yet", "Encourage satisfied customers to leave reviews")

    if total >= 50:
        section.score += 3
    elif total >= 20:
        section.score += 2
    elif total >= 5:
        section.score += 1
    else:
        section.gap(f"Only {total} reviews - aim for at least 20", "Encourage satisfied customers to leave reviews")

    if response_rate >= 90:
        section.score += 2
    elif response_rate >= 70:
        section.score += 1
    else:
        section.gap(f"Response rate ({response_rate}%) is below 70%", "Respond to all reviews, especially negative ones")

    if recent >= 5:
        section.score += 2
    elif recent >= 2:
        section.score += 1
    else:
        section.gap(
            "Not enough recent reviews",
            "Implement a review generation strategy for consistent new reviews",
        )

    section.details.update({
        "average_rating": rating,
        "total_reviews": total,
        "response_rate": response_rate,
        "recent_reviews": recent,
    })
    section.close(
        "Strong review profile; keep replying to every new review",
        "Good review foundation; keep asking happy customers for reviews and reply to each one",
    )
    return section


def score_photos(snapshot: ProfileSnapshot) -> ScoreSection:
    section = _section("photos")
    photos = snapshot.photos
    total = snapshot.total_photos
    categories = sorted({photo["category"] for photo in photos if photo.get("category")})
    has_cover = "COVER" in categories
    has_logo = "LOGO" in categories or "PROFILE" in categories

    if total >= 25:
        section.score += 3
    elif total >= 10:
        section.score += 2
    elif total >= 5:
        section.score += 1
    else:
        section.gap(
            f"Only {total} photos - Google recommends at least 10",
            "Add more high-quality photos of your business (interior, exterior, team, products)",
        )

    if has_cover:
        section.score += 1
    else:
        section.gap("Cover photo is not set", "Upload a compelling cover photo that represents your business")

    if has_logo:
        section.score += 1
    else:
        section.gap("Logo photo is not set", "Upload your business logo")

    if len(categories) >= 4:
        section.score += 1
    else:
        section.gap(
            "Limited variety in photo types",
            "Add photos in different categories: interior, exterior, team, products/services",
        )

    section.details.update({
        "total_photos": total,
        "has_cover_photo": has_cover,
        "has_logo_photo": has_logo,
        "photo_categories": categories,
    })
    section.close(
        "Great photo coverage; refresh photos regularly to stay current",
        "Good photo foundation; add more photos across categories",
    )
    return section


def score_posts(snapshot: ProfileSnapshot, as_of: datetime) -> ScoreSection:
    section = _section("posts")
    posts = snapshot.posts
    total = snapshot.total_posts
    recent = _count_recent(posts, as_of - RECENT_WINDOW)
    post_times = [_parse_time(post.get("createTime")) for post in posts]
    post_times = [created for created in post_times if created is not None]
    last_post = max(post_times).isoformat() if post_times else None

    if total == 0:
        section.gap("No posts yet", "Start posting weekly updates - share offers, events, or news")
    elif recent >= 8:
        section.score += 3
    elif recent >= 4:
        section.score += 2
    elif recent >= 1:
        section.score += 1
    else:
        section.gap("No posts in the last 30 days", "Post updates at least weekly - share offers, events, or news")

    if total >= 20:
        section.score += 2
    elif total >= 5:
        section.score += 1
    elif total > 0:
        section.gap(f"Only {total} total posts", "Build a consistent posting schedule to improve engagement")

    section.details.update({"total_posts": total, "posts_last_30_days": recent, "last_post_date": last_post})
    section.close(
        "Consistent posting activity; keep sharing regular updates",
        "Posting has started; share updates more often",
    )
    return section


def score_products(snapshot: ProfileSnapshot) -> ScoreSection:
    section = _section("products")
    products = snapshot.products
    total = snapshot.total_products
    with_photos = sum(1 for product in products if product.get("media"))
    with_descriptions = sum(1 for product in products if product.get("description"))

    if total >= 10:
        section.score += 2
    elif total >= 3:
        section.score += 1
    elif total == 0:
        section.gap("No products listed", "Add your products with photos and detailed descriptions")
    else:
        section.gap(f"Only {total} products listed", "Add more of your products to the profile")

    if total > 0:
        if with_photos == total:
            section.score += 1
        else:
            section.gap(f"{total - with_photos} products missing photos", "Add photos to all products")
        if with_descriptions == total:
            section.score += 1
        else:
            section.gap(f"{total - with_descriptions} products missing descriptions", "Add detailed descriptions to all products")

    section.details.update({
        "total_products": total,
        "products_with_photos": with_photos,
        "products_with_descriptions": with_descriptions,
    })
    section.close(
        "Product catalog is complete; keep it in sync with what you sell",
        "Products are listed; add more items with descriptions and images",
    )
    return section


def score_services(snapshot: ProfileSnapshot) -> ScoreSection:
    section = _section("services")
    services = snapshot.services
    total = snapshot.total_services
    with_descriptions = sum(1 for service in services if service.get("description"))

    if total >= 5:
        section.score += 2
    elif total >= 1:
        section.score += 1
    else:
        section.gap("No services listed", "List your services with detailed descriptions")

    if total > 0 and with_descriptions == total:
        section.score += 1
    elif total > 0:
        section.gap(f"{total - with_descriptions} services missing descriptions", "Add descriptions to all services")

    section.details.update({"total_services": total, "services_with_descriptions": with_descriptions})
    section.close(
        "Services are well described; review them when your offering changes",
        "Services are listed; add more with descriptions",
    )
    return section


def score_q_and_a(snapshot: ProfileSnapshot) -> ScoreSection:
    section = _section("q_and_a")
    questions = snapshot.questions
    total = snapshot.total_questions
    answered = sum(1 for question in questions if question.get("topAnswers"))
    owner_answered = sum(
        1
        for question in questions
        if isinstance(question.get("topAnswers"), list) and any(map(_is_owner_answer, question["topAnswers"]))
    )

    if total >= 10:
        section.score += 1
    elif total >= 3:
        section.score += 0.5
    elif total == 0:
        section.gap("No questions yet", "Seed your Q&A section with common questions and answers")
    else:
        section.gap(f"Only {total} questions in Q&A", "Seed your Q&A section with common questions and answers")

    if total > 0:
        answer_rate = answered / total
        if answer_rate >= 0.9:
            section.score += 1
        elif answer_rate >= 0.7:
            section.score += 0.5
        else:
            section.gap("Low Q&A response rate", "Answer all customer questions promptly")

        owner_share = owner_answered / total
        if owner_share >= 0.8:
            section.score += 2
        elif owner_share >= 0.5:
            section.score += 1
        else:
            section.gap("Low owner participation in Q&A", "Proactively answer questions as the business owner")

    section.details.update({
        "total_questions": total,
        "answered_questions": answered,
        "owner_answers": owner_answered,
    })
    section.close(
        "Questions are answered promptly by the owner; keep it that way",
        "Questions are being handled; answer every one as the owner",
    )
    return section


def _has_attribute(attributes: List[Dict[str, Any]], keywords: Iterable[str]) -> bool:
    for attribute in attributes:
        name = str(attribute.get("name") or attribute.get("attributeId") or "").lower()
        if any(keyword in name for keyword in keywords):
            return True
    return False


def score_attributes(snapshot: ProfileSnapshot) -> ScoreSection:
    section = _section("attributes")
    attributes = snapshot.attributes
    total = len(attributes)
    has_hours = bool((snapshot.regular_hours or {}).get("periods"))
    has_payment = _has_attribute(attributes, PAYMENT_KEYWORDS)
    has_accessibility = _has_attribute(attributes, ACCESSIBILITY_KEYWORDS)
    has_amenities = _has_attribute(attributes, AMENITY_KEYWORDS)

    if has_hours:
        section.score += 1
    else:
        section.gap("Business hours not set", "Set your business hours including special hours")

    if total >= 10:
        section.score += 2
    elif total >= 5:
        section.score += 1
    else:
        section.gap(
            f"Only {total} attributes set",
            "Fill out all relevant business attributes (payment methods, accessibility, amenities)",
        )

    if has_payment or has_accessibility or has_amenities:
        section.score += 1
    else:
        section.gap(
            "No payment, accessibility or amenity attributes set",
            "Add payment methods, accessibility features, and amenities",
        )

    section.details.update({
        "has_hours": has_hours,
        "has_payment_methods": has_payment,
        "has_accessibility": has_accessibility,
        "has_amenities": has_amenities,
        "total_attributes": total,
    })
    section.close(
        "Hours and attributes are filled in; revisit them after any change",
        "Hours are set; add more attributes to describe the business",
    )
    return section


def score(snapshot: ProfileSnapshot, identity: Optional[BusinessIdentity] = None, as_of: Optional[datetime] = None) -> ScoreBreakdown:
    """Score a snapshot. ``as_of`` defaults to the snapshot's sync time so results are reproducible."""
    identity = identity or BusinessIdentity()
    reference = _resolve_as_of(snapshot, as_of)
    sections = [
        score_profile_info(snapshot, identity),
        score_reviews(snapshot, reference),
        score_photos(snapshot),
        score_posts(snapshot, reference),
        score_products(snapshot),
        score_services(snapshot),
        score_q_and_a(snapshot),
        score_attributes(snapshot),
    ]
    overall = overall_from_sections(sections)
    breakdown = ScoreBreakdown(
        overall_score=overall,
        status=classify(overall),
        sections={section.key: section for section in sections},
        as_of=reference.isoformat(),
    )
    logger.info("Scored %s: %d (%s)", snapshot.location_id or snapshot.name, overall, breakdown.status)
    return breakdown
