from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence

logger = logging.getLogger(__name__)

PENDING = "pending"
PREPARING = "preparing"
READY = "ready"
PICKED_UP = "pickedUp"
COMPLETED = "completed"
CANCELLED = "cancelled"

ORDER_FLOW = (PENDING, PREPARING, READY, PICKED_UP, COMPLETED)
LIVE_STATUSES = frozenset({PENDING, PREPARING, READY, PICKED_UP})
KNOWN_STATUSES = frozenset(ORDER_FLOW) | {CANCELLED}

ACTION_LABELS = {
    PENDING: "Accept Order",
    PREPARING: "Mark as Ready",
    READY: "Rider Picked Up",
    PICKED_UP: "Mark as Delivered",
}

STATUS_COLORS = {
    PENDING: "#f59e0b",
    PREPARING: "#3b82f6",
    READY: "#8b5cf6",
    PICKED_UP: "#0ea5e9",
    COMPLETED: "#059669",
    CANCELLED: "#dc2626",
}
DEFAULT_STATUS_COLOR = "#6b7280"


@dataclass(frozen=True)
class LineItem:
    name: str
    price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class Order:
    id: str
    canteen_id: Optional[str]
    customer_name: str
    customer_phone: str
    customer_department: Optional[str]
    items: list = field(default_factory=list)
    total_amount: Decimal = Decimal("0")
    status: str = PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def line_items(self) -> list[LineItem]:
        return [item for item in (resolve_line_item(entry) for entry in self.items) if item]

    @property
    def next_status(self) -> Optional[str]:
        return next_status(self.status)


def next_status(current: Optional[str]) -> Optional[str]:
    """Return the successor of ``current`` in the fulfillment chain.

    ``completed`` is the end of the chain and ``cancelled`` never advances;
    both, like any status outside the chain, yield ``None``.
    """
    if current not in ORDER_FLOW:
        return None
    index = ORDER_FLOW.index(current)
    if index + 1 >= len(ORDER_FLOW):
        return None
    return ORDER_FLOW[index + 1]


def action_label(current: Optional[str]) -> Optional[str]:
    return ACTION_LABELS.get(current) if next_status(current) else None


def status_color(status: Optional[str]) -> str:
    return STATUS_COLORS.get(status, DEFAULT_STATUS_COLOR)


def normalize_items(raw: Any) -> list:
    """Coerce the stored ``items`` field into a list; never raises."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            logger.debug("Unparseable items payload, using empty list")
            return []
        if isinstance(decoded, list):
            return decoded
        if isinstance(decoded, dict):
            return [decoded]
        return []
    if isinstance(raw, dict):
        return [raw]
    return []


def parse_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Ignoring unparseable amount %r", value)
        return Decimal("0")
    if not amount.is_finite():
        return Decimal("0")
    return amount


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def resolve_line_item(entry: Any) -> Optional[LineItem]:
    """Read either ``{name, price, quantity}`` or ``{menuItem: {...}, quantity}``."""
    if not isinstance(entry, dict):
        return None
    source = entry.get("menuItem")
    if not isinstance(source, dict):
        source = entry

    price = parse_amount(source.get("price", entry.get("price")))
    if price < 0:
        price = Decimal("0")

    quantity = entry.get("quantity", source.get("quantity", 1))
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        quantity = 1
    if quantity < 1:
        quantity = 1

    name = source.get("name") or entry.get("name") or ""
    return LineItem(name=str(name), price=price, quantity=quantity)


def normalize_order(raw: dict) -> Order:
    customer = raw.get("customer")
    if not isinstance(customer, dict):
        customer = {}

    timestamp = raw.get("created_at")
    return Order(
        id=str(raw.get("id", "")),
        canteen_id=raw.get("canteen_id"),
        customer_name=str(raw.get("customer_name") or customer.get("name") or ""),
        customer_phone=str(raw.get("customer_phone") or customer.get("phone") or ""),
        customer_department=raw.get("customer_department") or customer.get("department"),
        items=normalize_items(raw.get("items", raw.get("items_json"))),
        total_amount=parse_amount(raw.get("total_amount")),
        status=str(raw.get("status") or ""),
        created_at=timestamp,
        updated_at=raw.get("updated_at") or timestamp,
    )


def reconcile_orders(raw_orders: Iterable[dict]) -> list[Order]:
    """Normalize a fetched snapshot and drop duplicate ids.

    When the same id appears more than once the row with the latest
    ``updated_at`` wins; on a tie the first row seen is kept. Snapshot order is
    otherwise preserved.
    """
    kept: dict[str, Order] = {}
    for raw in raw_orders:
        if not isinstance(raw, dict) or not raw.get("id"):
            continue
        order = normalize_order(raw)
        current = kept.get(order.id)
        if current is None or _sort_key(order.updated_at) > _sort_key(current.updated_at):
            kept[order.id] = order
    return list(kept.values())


def live_board(orders: Sequence[Order]) -> list[Order]:
    active = [order for order in orders if order.status in LIVE_STATUSES]
    return sorted(active, key=lambda order: _sort_key(order.created_at), reverse=True)


def order_history(orders: Sequence[Order], status: str = "all", search: str = "") -> list[Order]:
    filtered = list(orders)
    if search:
        needle = search.lower()
        filtered = [
            order
            for order in filtered
            if needle in order.customer_name.lower() or search in order.customer_phone
        ]
    if status != "all":
        filtered = [order for order in filtered if order.status == status]
    return filtered


def _sort_key(value: Any) -> float:
    parsed = parse_timestamp(value)
    if parsed is None:
        return float("-inf")
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.timestamp()
