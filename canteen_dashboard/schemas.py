from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .board import Snapshot
from .lifecycle import Order, action_label, status_color
from .metrics import DashboardStats, Review, ReviewSummary


class HealthResponse(BaseModel):
    status: Literal["ok"]


class LineItemView(BaseModel):
    name: str
    price: float
    quantity: int
    line_total: float


class OrderCard(BaseModel):
    id: str
    customer_name: str
    customer_phone: str
    customer_department: Optional[str] = None
    items: List[LineItemView]
    total_amount: float
    status: str
    status_color: str
    next_status: Optional[str] = None
    action_label: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderCard":
        return cls(
            id=order.id,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            customer_department=order.customer_department,
            items=[
                LineItemView(
                    name=item.name,
                    price=float(item.price),
                    quantity=item.quantity,
                    line_total=float(item.line_total),
                )
                for item in order.line_items
            ],
            total_amount=float(order.total_amount),
            status=order.status,
            status_color=status_color(order.status),
            next_status=order.next_status,
            action_label=action_label(order.status),
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class StatsView(BaseModel):
    total_earnings: float = 0.0
    today_earnings: float = 0.0
    total_orders: int = 0
    average_rating: float = 0.0

    @classmethod
    def from_stats(cls, stats: DashboardStats) -> "StatsView":
        return cls(
            total_earnings=float(stats.total_earnings),
            today_earnings=float(stats.today_earnings),
            total_orders=stats.total_orders,
            average_rating=stats.average_rating,
        )


class DashboardResponse(BaseModel):
    canteen_id: Optional[str] = None
    stats: StatsView = Field(default_factory=StatsView)
    live_orders: List[OrderCard] = Field(default_factory=list)
    stale: bool = False
    refreshed_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot, stale: bool = False) -> "DashboardResponse":
        return cls(
            canteen_id=snapshot.canteen_id,
            stats=StatsView.from_stats(snapshot.stats),
            live_orders=[OrderCard.from_order(order) for order in snapshot.board],
            stale=stale,
            refreshed_at=snapshot.refreshed_at,
        )


class AdvanceOrderRequest(BaseModel):
    status: str = Field(..., description="Requested next status")


class OrderHistoryResponse(BaseModel):
    canteen_id: Optional[str] = None
    status_filter: str = "all"
    search: str = ""
    orders: List[OrderCard] = Field(default_factory=list)


class ReviewView(BaseModel):
    id: str
    rating: int
    customer_name: str
    comment: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_review(cls, review: Review) -> "ReviewView":
        return cls(
            id=review.id,
            rating=review.rating,
            customer_name=review.customer_name,
            comment=review.comment,
            created_at=review.created_at,
        )


class ReviewSummaryResponse(BaseModel):
    canteen_id: Optional[str] = None
    average_rating: float = 0.0
    total_reviews: int = 0
    rating_distribution: List[int] = Field(default_factory=lambda: [0, 0, 0, 0, 0])
    percentages: List[float] = Field(default_factory=lambda: [0.0] * 5)
    rating_filter: Union[Literal["all"], int] = "all"
    reviews: List[ReviewView] = Field(default_factory=list)

    @classmethod
    def from_summary(cls, canteen_id: str, summary: ReviewSummary) -> "ReviewSummaryResponse":
        return cls(
            canteen_id=canteen_id,
            average_rating=summary.average_rating,
            total_reviews=summary.total_reviews,
            rating_distribution=summary.rating_distribution,
            percentages=summary.percentages,
            rating_filter=summary.rating_filter,
            reviews=[ReviewView.from_review(review) for review in summary.reviews],
        )


class WebhookPayload(BaseModel):
    type: Optional[str] = None
    table: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None

    def canteen_id(self) -> Optional[str]:
        for row in (self.record, self.old_record):
            if row and row.get("canteen_id"):
                return str(row["canteen_id"])
        return None


class WebhookAck(BaseModel):
    canteen_id: Optional[str] = None
    delivered: int = 0
