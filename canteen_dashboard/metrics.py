from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Union

from .lifecycle import COMPLETED, Order, parse_timestamp

logger = logging.getLogger(__name__)

RATING_BUCKETS = 5

RatingFilter = Union[str, int]


@dataclass(frozen=True)
class Review:
    id: str
    canteen_id: Optional[str]
    rating: int
    customer_name: str
    comment: Optional[str]
    created_at: Optional[str]


@dataclass(frozen=True)
class DashboardStats:
    total_earnings: Decimal = Decimal("0")
    today_earnings: Decimal = Decimal("0")
    total_orders: int = 0
    average_rating: float = 0.0


@dataclass(frozen=True)
class ReviewSummary:
    average_rating: float
    total_reviews: int
    rating_distribution: list[int]
    percentages: list[float]
    rating_filter: RatingFilter = "all"
    reviews: list[Review] = field(default_factory=list)


def normalize_reviews(raw_reviews: Iterable[dict]) -> list[Review]:
    """Build ``Review`` records, dropping rows whose rating is not 1..5."""
    reviews: list[Review] = []
    for raw in raw_reviews:
        if not isinstance(raw, dict):
            continue
        rating = raw.get("rating")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= RATING_BUCKETS:
            logger.warning("Skipping review id=%s with invalid rating %r", raw.get("id"), rating)
            continue
        reviews.append(
            Review(
                id=str(raw.get("id", "")),
                canteen_id=raw.get("canteen_id"),
                rating=rating,
                customer_name=str(raw.get("customer_name") or ""),
                comment=raw.get("comment") or None,
                created_at=raw.get("created_at"),
            )
        )
    return reviews


def average_rating(reviews: Sequence[Review]) -> float:
    if not reviews:
        return 0.0
    return sum(review.rating for review in reviews) / len(reviews)


def rating_distribution(reviews: Sequence[Review]) -> list[int]:
    distribution = [0] * RATING_BUCKETS
    for review in reviews:
        distribution[review.rating - 1] += 1
    return distribution


def compute_dashboard_stats(
    orders: Sequence[Order],
    reviews: Sequence[Review],
    *,
    now: datetime | None = None,
    tz: tzinfo | None = None,
) -> DashboardStats:
    """Derive the dashboard figures from one snapshot.

    Earnings only count ``completed`` orders while ``total_orders`` counts every
    order in the snapshot. "Today" is the calendar date of ``now`` in ``tz``
    (system local time when ``tz`` is None).
    """
    now = _localize(now or datetime.now(tz), tz)
    today = now.date()

    total = Decimal("0")
    today_total = Decimal("0")
    for order in orders:
        if order.status != COMPLETED:
            continue
        total += order.total_amount
        created = parse_timestamp(order.created_at)
        if created is not None and _localize(created, tz).date() == today:
            today_total += order.total_amount

    return DashboardStats(
        total_earnings=total,
        today_earnings=today_total,
        total_orders=len(orders),
        average_rating=average_rating(reviews),
    )


def summarize_reviews(reviews: Sequence[Review], rating_filter: RatingFilter = "all") -> ReviewSummary:
    distribution = rating_distribution(reviews)
    total = len(reviews)
    percentages = [(count * 100 / total) if total else 0.0 for count in distribution]

    if rating_filter == "all":
        displayed = list(reviews)
    else:
        displayed = [review for review in reviews if review.rating == rating_filter]

    return ReviewSummary(
        average_rating=average_rating(reviews),
        total_reviews=total,
        rating_distribution=distribution,
        percentages=percentages,
        rating_filter=rating_filter,
        reviews=displayed,
    )


def _localize(value: datetime, tz: tzinfo | None) -> datetime:
    # naive values are wall-clock time in the dashboard zone
    if tz is None:
        return value.astimezone()
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)
