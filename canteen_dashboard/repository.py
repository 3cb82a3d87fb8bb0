from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from .database import get_connection, placeholder
from .notifications import ChangeFeed

logger = logging.getLogger(__name__)

ORDER_COLUMNS = """
    id, canteen_id, customer_name, customer_phone, customer_department,
    items_json, total_amount, status, created_at, updated_at
"""


class CanteenRepository:
    """SQL-backed stand-in for the hosted backend, used locally and in tests.

    Every committed order or review write is announced on ``feed`` for the
    owning canteen.
    """

    def __init__(self, connection_factory=get_connection, feed: ChangeFeed | None = None):
        self._connection_factory = connection_factory
        self.feed = feed or ChangeFeed()

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def fetch_orders(self, canteen_id: str) -> list[dict]:
        with self._connection() as conn:
            ph = placeholder(conn)
            rows = conn.execute(
                f"""
                SELECT {ORDER_COLUMNS}
                FROM orders
                WHERE canteen_id = {ph}
                ORDER BY created_at DESC;
                """,
                (canteen_id,),
            ).fetchall()
        return [_order_row(row) for row in rows]

    def fetch_reviews(self, canteen_id: str) -> list[dict]:
        with self._connection() as conn:
            ph = placeholder(conn)
            rows = conn.execute(
                f"""
                SELECT id, canteen_id, customer_name, rating, comment, created_at
                FROM reviews
                WHERE canteen_id = {ph}
                ORDER BY created_at DESC;
                """,
                (canteen_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def update_order_status(
        self, order_id: str, new_status: str, updated_at: str, *, expected_status: str
    ) -> bool:
        with self._connection() as conn:
            ph = placeholder(conn)
            cursor = conn.execute(
                f"""
                UPDATE orders
                SET status = {ph}, updated_at = {ph}
                WHERE id = {ph} AND status = {ph};
                """,
                (new_status, updated_at, order_id, expected_status),
            )
            conn.commit()
            if cursor.rowcount != 1:
                return False
            row = conn.execute(
                f"SELECT canteen_id FROM orders WHERE id = {ph};", (order_id,)
            ).fetchone()

        logger.info("Order %s moved %s -> %s", order_id, expected_status, new_status)
        if row is not None:
            self.feed.publish(row["canteen_id"])
        return True

    def subscribe_to_order_changes(
        self, canteen_id: str, on_change: Callable[[], None]
    ) -> Callable[[], None]:
        return self.feed.subscribe(canteen_id, on_change)

    def resolve_canteen_for_owner(self, owner_id: str) -> Optional[str]:
        with self._connection() as conn:
            ph = placeholder(conn)
            row = conn.execute(
                f"SELECT id FROM canteens WHERE owner_id = {ph} ORDER BY id LIMIT 1;",
                (owner_id,),
            ).fetchone()
        return row["id"] if row is not None else None

    def add_canteen(self, canteen_id: str, name: str, owner_id: str) -> None:
        with self._connection() as conn:
            ph = placeholder(conn)
            conn.execute(
                f"INSERT INTO canteens (id, name, owner_id) VALUES ({ph}, {ph}, {ph});",
                (canteen_id, name, owner_id),
            )
            conn.commit()

    def add_order(
        self,
        canteen_id: str,
        *,
        customer_name: str,
        items: list,
        total_amount: float,
        status: str = "pending",
        customer_phone: str | None = None,
        customer_department: str | None = None,
        order_id: str | None = None,
        created_at: str | None = None,
    ) -> str:
        order_id = order_id or str(uuid.uuid4())
        created_at = created_at or datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            ph = placeholder(conn)
            conn.execute(
                f"""
                INSERT INTO orders ({ORDER_COLUMNS})
                VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph}, {ph});
                """,
                (
                    order_id,
                    canteen_id,
                    customer_name,
                    customer_phone,
                    customer_department,
                    json.dumps(items),
                    total_amount,
                    status,
                    created_at,
                    created_at,
                ),
            )
            conn.commit()
        self.feed.publish(canteen_id)
        return order_id

    def add_review(
        self,
        canteen_id: str,
        *,
        customer_name: str,
        rating: int,
        comment: str | None = None,
        review_id: str | None = None,
        created_at: str | None = None,
    ) -> str:
        review_id = review_id or str(uuid.uuid4())
        created_at = created_at or datetime.now(timezone.utc).isoformat()
        with self._connection() as conn:
            ph = placeholder(conn)
            conn.execute(
                f"""
                INSERT INTO reviews (id, canteen_id, customer_name, rating, comment, created_at)
                VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph});
                """,
                (review_id, canteen_id, customer_name, rating, comment, created_at),
            )
            conn.commit()
        self.feed.publish(canteen_id)
        return review_id


def _order_row(row) -> dict:
    record = dict(row)
    record["items"] = record.pop("items_json")
    return record
