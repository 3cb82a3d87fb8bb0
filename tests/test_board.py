from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from canteen_dashboard.backend import BackendError
from canteen_dashboard.board import (
    BoardRegistry,
    BoardSession,
    InvalidTransitionError,
    OrderNotFoundError,
    StaleOrderError,
)
from canteen_dashboard.notifications import ChangeFeed

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def order_row(order_id, status, created_at, amount=100):
    return {
        "id": order_id,
        "canteen_id": "canteen-1",
        "customer_name": f"Customer {order_id}",
        "customer_phone": "0300",
        "items": '[{"name": "Chai", "price": 50, "quantity": 2}]',
        "total_amount": amount,
        "status": status,
        "created_at": created_at,
        "updated_at": created_at,
    }


class InMemoryBackend:
    def __init__(self, orders=None, reviews=None):
        self.orders = list(orders or [])
        self.reviews = list(reviews or [])
        self.feed = ChangeFeed()
        self.writes = []
        self.fetches = 0
        self.resolves = 0
        self.fail_fetch = False
        self.fail_write = False

    def fetch_orders(self, canteen_id):
        self.fetches += 1
        if self.fail_fetch:
            raise BackendError("backend down")
        return [dict(row) for row in self.orders if row["canteen_id"] == canteen_id]

    def fetch_reviews(self, canteen_id):
        if self.fail_fetch:
            raise BackendError("backend down")
        return [dict(row) for row in self.reviews]

    def update_order_status(self, order_id, new_status, updated_at, *, expected_status):
        if self.fail_write:
            raise BackendError("write rejected")
        for row in self.orders:
            if row["id"] == order_id and row["status"] == expected_status:
                row["status"] = new_status
                row["updated_at"] = updated_at
                self.writes.append((order_id, new_status))
                self.feed.publish(row["canteen_id"])
                return True
        return False

    def subscribe_to_order_changes(self, canteen_id, on_change):
        return self.feed.subscribe(canteen_id, on_change)

    def resolve_canteen_for_owner(self, owner_id):
        self.resolves += 1
        return "canteen-1" if owner_id == "owner-1" else None


@pytest.fixture()
def backend():
    return InMemoryBackend(
        orders=[
            order_row("o-pending", "pending", "2025-03-01T09:00:00+00:00"),
            order_row("o-ready", "ready", "2025-03-01T09:30:00+00:00"),
            order_row("o-done", "completed", "2025-03-01T08:00:00+00:00", amount=250),
            order_row("o-picked", "pickedUp", "2025-03-01T07:00:00+00:00", amount=40),
        ],
        reviews=[{"id": "r1", "rating": 5}, {"id": "r2", "rating": 3}],
    )


def run_with_session(backend, scenario):
    async def main():
        session = BoardSession(backend, "canteen-1", tz=timezone.utc, clock=fixed_clock)
        await session.start()
        try:
            return await scenario(session)
        finally:
            await session.stop()

    return asyncio.run(main())


def test_start_builds_the_first_snapshot(backend):
    async def scenario(session):
        return session.snapshot

    snapshot = run_with_session(backend, scenario)

    assert [order.id for order in snapshot.board] == ["o-ready", "o-pending", "o-picked"]
    assert snapshot.stats.total_earnings == Decimal("250")
    assert snapshot.stats.today_earnings == Decimal("250")
    assert snapshot.stats.total_orders == 4
    assert snapshot.stats.average_rating == 4.0
    assert snapshot.refreshed_at == NOW


def test_advance_in_sequence_refreshes_from_the_store(backend):
    async def scenario(session):
        await session.advance("o-pending", "preparing")
        return await session.advance("o-pending", "ready")

    snapshot = run_with_session(backend, scenario)

    assert backend.writes == [("o-pending", "preparing"), ("o-pending", "ready")]
    assert {order.id: order.status for order in snapshot.board}["o-pending"] == "ready"
    assert snapshot.orders[0].updated_at == NOW.isoformat()


def test_out_of_sequence_advance_is_rejected_without_writing(backend):
    async def scenario(session):
        before = session.snapshot
        with pytest.raises(InvalidTransitionError):
            await session.advance("o-pending", "ready")
        with pytest.raises(InvalidTransitionError):
            await session.advance("o-done", "completed")
        return before, session.snapshot

    before, after = run_with_session(backend, scenario)

    assert backend.writes == []
    assert before is after


def test_unknown_order_is_reported(backend):
    async def scenario(session):
        with pytest.raises(OrderNotFoundError):
            await session.advance("nope", "preparing")

    run_with_session(backend, scenario)


def test_completing_an_order_moves_it_into_earnings(backend):
    async def scenario(session):
        return await session.advance("o-picked", "completed")

    snapshot = run_with_session(backend, scenario)

    assert "o-picked" not in {order.id for order in snapshot.board}
    assert snapshot.stats.total_earnings == Decimal("290")
    assert snapshot.stats.total_orders == 4


def test_stale_board_gets_conflict_and_no_local_patch(backend):
    async def scenario(session):
        # another session accepted the order behind our back
        backend.orders[0]["status"] = "preparing"
        before = session.snapshot
        with pytest.raises(StaleOrderError):
            await session.advance("o-pending", "preparing")
        return before

    before = run_with_session(backend, scenario)

    assert backend.writes == []
    assert {order.id: order.status for order in before.orders}["o-pending"] == "pending"


def test_write_failure_leaves_snapshot_untouched(backend):
    async def scenario(session):
        backend.fail_write = True
        before = session.snapshot
        with pytest.raises(BackendError):
            await session.advance("o-pending", "preparing")
        return before, session.snapshot

    before, after = run_with_session(backend, scenario)

    assert before is after
    assert backend.orders[0]["status"] == "pending"


def test_fetch_failure_keeps_previous_snapshot(backend):
    async def scenario(session):
        good = session.snapshot
        backend.fail_fetch = True
        backend.orders.append(order_row("o-new", "pending", "2025-03-01T11:00:00+00:00"))
        failed = await session.invalidate()
        stale = session.stale
        backend.fail_fetch = False
        recovered = await session.invalidate()
        return good, failed, stale, recovered, session.stale

    good, failed, stale, recovered, stale_after = run_with_session(backend, scenario)

    assert failed is good
    assert stale is True
    assert "o-new" in {order.id for order in recovered.board}
    assert stale_after is False


def test_change_notification_from_another_thread_triggers_refetch(backend):
    async def scenario(session):
        backend.orders.append(order_row("o-new", "pending", "2025-03-01T11:00:00+00:00"))
        notifier = threading.Thread(target=backend.feed.publish, args=("canteen-1",))
        notifier.start()
        notifier.join()
        for _ in range(200):
            if any(order.id == "o-new" for order in session.snapshot.board):
                break
            await asyncio.sleep(0.01)
        return session.snapshot

    snapshot = run_with_session(backend, scenario)

    assert snapshot.board[0].id == "o-new"


def test_queued_invalidations_are_coalesced(backend):
    async def scenario(session):
        fetches_before = backend.fetches
        await asyncio.gather(*(session.invalidate() for _ in range(5)))
        return backend.fetches - fetches_before

    refetches = run_with_session(backend, scenario)

    assert 1 <= refetches < 5


def test_registry_resolves_owner_once_and_shares_sessions(backend):
    async def main():
        registry = BoardRegistry(backend, tz=timezone.utc)
        first = await registry.session_for_owner("owner-1")
        second = await registry.session_for_owner("owner-1")
        missing = await registry.session_for_owner("owner-2")
        listeners = backend.feed.listener_count("canteen-1")
        await registry.close()
        return first, second, missing, listeners

    first, second, missing, listeners = asyncio.run(main())

    assert first is second
    assert missing is None
    assert backend.resolves == 2
    assert listeners == 1
    assert backend.feed.listener_count("canteen-1") == 0


def test_invalidate_after_stop_fails_fast(backend):
    async def main():
        session = BoardSession(backend, "canteen-1", tz=timezone.utc, clock=fixed_clock)
        await session.start()
        await session.stop()
        with pytest.raises(RuntimeError):
            await asyncio.wait_for(session.invalidate(), timeout=1)
        return session

    session = asyncio.run(main())

    assert backend.feed.listener_count("canteen-1") == 0
    assert session.snapshot.stats.total_orders == 4


def test_slow_canteen_does_not_hold_up_other_sessions(backend):
    release = threading.Event()

    class SlowBackend(InMemoryBackend):
        def fetch_orders(self, canteen_id):
            if canteen_id == "canteen-slow":
                release.wait(5)
            return super().fetch_orders(canteen_id)

    slow_backend = SlowBackend(orders=backend.orders, reviews=backend.reviews)

    async def main():
        registry = BoardRegistry(slow_backend, tz=timezone.utc)
        slow = asyncio.create_task(registry.session("canteen-slow"))
        await asyncio.sleep(0.05)
        try:
            fast = await asyncio.wait_for(registry.session("canteen-1"), timeout=2)
            slow_started_first = slow.done()
        finally:
            release.set()
        await slow
        await registry.close()
        return fast, slow_started_first

    fast, slow_started_first = asyncio.run(main())

    assert slow_started_first is False
    assert fast.snapshot.stats.total_orders == 4


def test_failed_start_leaves_no_session_behind(backend):
    class BrokenFeedBackend(InMemoryBackend):
        def subscribe_to_order_changes(self, canteen_id, on_change):
            raise RuntimeError("feed unavailable")

    broken = BrokenFeedBackend(orders=backend.orders)

    async def main():
        registry = BoardRegistry(broken, tz=timezone.utc)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await registry.session("canteen-1")
        await asyncio.sleep(0)
        leftovers = [
            task
            for task in asyncio.all_tasks()
            if task is not asyncio.current_task() and task.get_name().startswith("board-")
        ]
        await registry.close()
        return leftovers

    assert asyncio.run(main()) == []
