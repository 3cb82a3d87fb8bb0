from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, Optional

from .backend import BackendError, CanteenBackend
from .lifecycle import Order, live_board, next_status, reconcile_orders
from .metrics import DashboardStats, Review, compute_dashboard_stats, normalize_reviews

logger = logging.getLogger(__name__)


class OrderNotFoundError(Exception):
    """Raised when an order id is not part of the current snapshot."""


class InvalidTransitionError(Exception):
    """Raised when a requested status is not the successor of the current one."""

    def __init__(self, order_id: str, current: str, requested: str):
        super().__init__(
            f"Order {order_id} cannot move from {current!r} to {requested!r}"
        )
        self.order_id = order_id
        self.current = current
        self.requested = requested


class StaleOrderError(Exception):
    """Raised when the stored order no longer has the status the board showed."""


@dataclass(frozen=True)
class Snapshot:
    canteen_id: Optional[str]
    orders: list[Order] = field(default_factory=list)
    reviews: list[Review] = field(default_factory=list)
    board: list[Order] = field(default_factory=list)
    stats: DashboardStats = field(default_factory=DashboardStats)
    refreshed_at: Optional[datetime] = None


@dataclass
class Invalidation:
    canteen_id: str
    done: Optional[asyncio.Future] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BoardSession:
    """Keeps the live board and dashboard figures of one canteen current.

    Change notifications and local writes only enqueue an ``Invalidation``.
    A single drain task consumes the queue and, for each batch of pending
    invalidations, fetches orders and reviews, reconciles them and swaps in a
    new ``Snapshot``. A failed fetch leaves the previous snapshot in place.
    """

    def __init__(
        self,
        backend: CanteenBackend,
        canteen_id: str,
        *,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.canteen_id = canteen_id
        self.snapshot = Snapshot(canteen_id=canteen_id)
        self.last_error: Optional[str] = None
        self._backend = backend
        self._tz = tz
        self._clock = clock
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def stale(self) -> bool:
        return self.last_error is not None

    async def start(self) -> Snapshot:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._drain(), name=f"board-{self.canteen_id}")
        self._unsubscribe = self._backend.subscribe_to_order_changes(
            self.canteen_id, self._on_change
        )
        logger.info("Board session started for canteen=%s", self.canteen_id)
        return await self.invalidate()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        queue, self._queue = self._queue, None
        # nothing drains the queue from here on; release whoever still waits
        while queue is not None and not queue.empty():
            event = queue.get_nowait()
            if event.done is not None and not event.done.done():
                event.done.set_result(self.snapshot)
        logger.info("Board session stopped for canteen=%s", self.canteen_id)

    async def invalidate(self, wait: bool = True) -> Snapshot:
        if self._queue is None or self._loop is None:
            raise RuntimeError(f"Board session for canteen {self.canteen_id} is not running")
        done = self._loop.create_future() if wait else None
        self._queue.put_nowait(Invalidation(self.canteen_id, done))
        if done is not None:
            return await done
        return self.snapshot

    def find_order(self, order_id: str) -> Optional[Order]:
        for order in self.snapshot.orders:
            if order.id == order_id:
                return order
        return None

    async def advance(self, order_id: str, new_status: str) -> Snapshot:
        order = self.find_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} is unknown for canteen {self.canteen_id}")

        expected = next_status(order.status)
        if expected is None or new_status != expected:
            raise InvalidTransitionError(order_id, order.status, new_status)

        updated_at = self._clock().isoformat()
        written = await asyncio.to_thread(
            self._backend.update_order_status,
            order_id,
            new_status,
            updated_at,
            expected_status=order.status,
        )
        if not written:
            logger.warning(
                "Conditional update missed order=%s expected status=%s", order_id, order.status
            )
            await self.invalidate(wait=False)
            raise StaleOrderError(f"Order {order_id} is no longer {order.status!r}")

        return await self.invalidate()

    def _on_change(self) -> None:
        # called by the backend, possibly from a worker thread
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, Invalidation(self.canteen_id))

    async def _drain(self) -> None:
        queue = self._queue
        assert queue is not None
        while True:
            batch = [await queue.get()]
            while not queue.empty():
                batch.append(queue.get_nowait())
            try:
                await self._refresh()
            finally:
                for event in batch:
                    if event.done is not None and not event.done.done():
                        event.done.set_result(self.snapshot)

    async def _refresh(self) -> None:
        try:
            raw_orders, raw_reviews = await asyncio.to_thread(self._fetch)
        except BackendError as exc:
            logger.warning("Keeping previous snapshot for canteen=%s: %s", self.canteen_id, exc)
            self.last_error = str(exc)
            return
        except Exception as exc:
            logger.exception("Snapshot fetch failed for canteen=%s", self.canteen_id)
            self.last_error = str(exc)
            return

        orders = reconcile_orders(raw_orders)
        reviews = normalize_reviews(raw_reviews)
        now = self._clock()
        self.snapshot = Snapshot(
            canteen_id=self.canteen_id,
            orders=orders,
            reviews=reviews,
            board=live_board(orders),
            stats=compute_dashboard_stats(orders, reviews, now=now, tz=self._tz),
            refreshed_at=now,
        )
        self.last_error = None
        logger.debug(
            "Snapshot refreshed canteen=%s orders=%d live=%d reviews=%d",
            self.canteen_id,
            len(orders),
            len(self.snapshot.board),
            len(reviews),
        )

    def _fetch(self):
        return (
            self._backend.fetch_orders(self.canteen_id),
            self._backend.fetch_reviews(self.canteen_id),
        )


class BoardRegistry:
    """Owner → canteen resolution and one ``BoardSession`` per canteen."""

    def __init__(self, backend: CanteenBackend, *, tz: tzinfo | None = None):
        self._backend = backend
        self._tz = tz
        self._owners: Dict[str, str] = {}
        self._sessions: Dict[str, BoardSession] = {}
        self._starting: Dict[str, asyncio.Task] = {}

    async def resolve_canteen(self, owner_id: str) -> Optional[str]:
        if owner_id in self._owners:
            return self._owners[owner_id]
        canteen_id = await asyncio.to_thread(self._backend.resolve_canteen_for_owner, owner_id)
        if canteen_id is None:
            logger.info("No canteen registered for owner=%s", owner_id)
            return None
        self._owners[owner_id] = canteen_id
        return canteen_id

    async def session_for_owner(self, owner_id: str) -> Optional[BoardSession]:
        canteen_id = await self.resolve_canteen(owner_id)
        if canteen_id is None:
            return None
        return await self.session(canteen_id)

    async def session(self, canteen_id: str) -> BoardSession:
        session = self._sessions.get(canteen_id)
        if session is not None:
            return session
        # concurrent callers for the same canteen share one start
        starting = self._starting.get(canteen_id)
        if starting is None:
            starting = asyncio.create_task(
                self._start_session(canteen_id), name=f"board-start-{canteen_id}"
            )
            self._starting[canteen_id] = starting
        return await asyncio.shield(starting)

    async def _start_session(self, canteen_id: str) -> BoardSession:
        session = BoardSession(self._backend, canteen_id, tz=self._tz)
        try:
            await session.start()
        except BaseException:
            self._starting.pop(canteen_id, None)
            await session.stop()
            raise
        self._sessions[canteen_id] = session
        self._starting.pop(canteen_id, None)
        return session

    async def close(self) -> None:
        starting = list(self._starting.values())
        for task in starting:
            task.cancel()
        await asyncio.gather(*starting, return_exceptions=True)
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.stop()
