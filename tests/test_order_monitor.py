"""
Tests for core/order_monitor.py.

The tick loop is driven directly through ``monitor.tick()`` with a fake
clock; a few tests run the real APScheduler job for start/stop behaviour.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.order_monitor import OrderMonitor
from models.order import PersistedOrder, StatusRecord


def _status(status: str, **extra) -> StatusRecord:
    return StatusRecord(id="order-1", status=status, **extra)


# ---------------------------------------------------------------------------
# track / untrack
# ---------------------------------------------------------------------------


def test_track_order_adds_to_registry(monitor: OrderMonitor) -> None:
    monitor.track_order("order-1", 100)
    assert monitor.tracked_count == 1
    assert "order-1" in monitor.get_tracked_order_ids()


def test_track_order_twice_does_not_duplicate(monitor: OrderMonitor) -> None:
    monitor.track_order("order-1", 100)
    monitor.track_order("order-1", 100)
    assert monitor.tracked_count == 1


def test_untrack_order(monitor: OrderMonitor) -> None:
    monitor.track_order("order-1", 100)
    monitor.untrack_order("order-1")
    monitor.untrack_order("never-tracked")
    assert monitor.tracked_count == 0


def test_invalid_limits_rejected(mock_deps: dict) -> None:
    with pytest.raises(ValueError):
        OrderMonitor(**mock_deps, max_concurrent=0)
    with pytest.raises(ValueError):
        OrderMonitor(**mock_deps, tick_interval=0)


# ---------------------------------------------------------------------------
# load_pending_orders
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_load_pending_orders(monitor: OrderMonitor, mock_deps: dict, clock) -> None:
    mock_deps["get_pending_orders"].return_value = [
        PersistedOrder(external_order_id="order-a", owner_id=1, status="waiting", created_at=clock.now),
        PersistedOrder(external_order_id="order-b", owner_id=2, status="processing", created_at=clock.now),
    ]

    loaded = await monitor.load_pending_orders()

    assert loaded == 2
    assert monitor.tracked_count == 2
    assert set(monitor.get_tracked_order_ids()) == {"order-a", "order-b"}


@pytest.mark.asyncio
async def test_reconciled_status_does_not_fire_spurious_change(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_pending_orders"].return_value = [
        PersistedOrder(external_order_id="order-a", owner_id=1, status="processing", created_at=clock.now),
    ]
    mock_deps["get_order_status"].return_value = _status("processing")

    await monitor.load_pending_orders()
    await monitor.tick()

    mock_deps["get_order_status"].assert_awaited_once_with("order-a")
    mock_deps["on_status_change"].assert_not_called()
    mock_deps["update_order_status"].assert_not_awaited()
    assert monitor.tracked_count == 1


@pytest.mark.asyncio
async def test_load_pending_orders_db_error(monitor: OrderMonitor, mock_deps: dict) -> None:
    mock_deps["get_pending_orders"].side_effect = ConnectionError("DB down")

    loaded = await monitor.load_pending_orders()

    assert loaded == 0
    assert monitor.tracked_count == 0


# ---------------------------------------------------------------------------
# status change detection (end-to-end scenarios)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_settled_status_notifies_once_and_untracks(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    details = _status(
        "settled",
        depositCoin="ETH", depositNetwork="ethereum",
        settleCoin="BTC", settleNetwork="bitcoin",
    )
    mock_deps["get_order_status"].return_value = details

    monitor.track_order("order-1", 100, clock.now)
    clock.advance(11)
    await monitor.tick()

    mock_deps["get_order_status"].assert_awaited_once_with("order-1")
    mock_deps["update_order_status"].assert_awaited_once_with("order-1", "settled")
    mock_deps["on_status_change"].assert_called_once_with(100, "order-1", "pending", "settled", details)
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_unchanged_status_does_not_notify(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_order_status"].return_value = _status("pending")

    monitor.track_order("order-1", 100, clock.now)
    clock.advance(11)
    await monitor.tick()

    mock_deps["on_status_change"].assert_not_called()
    mock_deps["update_order_status"].assert_not_awaited()
    assert monitor.tracked_count == 1


@pytest.mark.asyncio
async def test_non_terminal_change_keeps_tracking(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_order_status"].return_value = _status("processing")

    monitor.track_order("order-1", 100, clock.now)
    await monitor.tick()

    mock_deps["on_status_change"].assert_called_once()
    assert monitor.tracked_count == 1

    # Same status on the next due poll → no second notification.
    clock.advance(15)
    await monitor.tick()
    assert mock_deps["on_status_change"].call_count == 1


@pytest.mark.asyncio
async def test_keeps_polling_after_api_error(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_order_status"].side_effect = [
        ConnectionError("Network error"),
        _status("settled"),
    ]

    monitor.track_order("order-1", 100, clock.now)

    clock.advance(11)
    await monitor.tick()
    assert monitor.tracked_count == 1
    mock_deps["on_status_change"].assert_not_called()

    # Failed poll still counts as a check, so the next one waits for the backoff.
    clock.advance(5)
    assert await monitor.tick() == 0

    clock.advance(11)
    await monitor.tick()

    assert mock_deps["get_order_status"].await_count == 2
    mock_deps["on_status_change"].assert_called_once()
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_mapping_payload_is_accepted(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_order_status"].return_value = {"id": "order-1", "status": "expired", "settleHash": None}

    monitor.track_order("order-1", 100, clock.now)
    await monitor.tick()

    args = mock_deps["on_status_change"].call_args.args
    assert args[:4] == (100, "order-1", "pending", "expired")
    assert isinstance(args[4], StatusRecord)
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_tick_is_noop_when_nothing_due(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    assert await monitor.tick() == 0

    monitor.track_order("order-1", 100, clock.now)
    await monitor.tick()
    clock.advance(10)
    assert await monitor.tick() == 0
    mock_deps["get_order_status"].assert_awaited_once()


@pytest.mark.asyncio
async def test_old_orders_back_off(monitor: OrderMonitor, mock_deps: dict, clock) -> None:
    monitor.track_order("old", 100, clock.now - timedelta(hours=3))
    await monitor.tick()

    clock.advance(14 * 60)
    assert await monitor.tick() == 0

    clock.advance(60)
    assert await monitor.tick() == 1


# ---------------------------------------------------------------------------
# failure isolation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_one_failing_poll_does_not_block_others(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    async def fetch(order_id: str) -> StatusRecord:
        if order_id == "bad":
            raise TimeoutError("provider timeout")
        return StatusRecord(id=order_id, status="settled")

    mock_deps["get_order_status"].side_effect = fetch
    monitor.track_order("bad", 1, clock.now)
    monitor.track_order("good", 2, clock.now)

    assert await monitor.tick() == 2

    assert monitor.get_tracked_order_ids() == ["bad"]
    mock_deps["on_status_change"].assert_called_once()


@pytest.mark.asyncio
async def test_persistence_failure_still_notifies_and_untracks(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_order_status"].return_value = _status("refunded")
    mock_deps["update_order_status"].side_effect = ConnectionError("DB down")

    monitor.track_order("order-1", 100, clock.now)
    await monitor.tick()

    mock_deps["on_status_change"].assert_called_once()
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_notification_failure_still_untracks(
    monitor: OrderMonitor, mock_deps: dict, clock
) -> None:
    mock_deps["get_order_status"].return_value = _status("failed")
    mock_deps["on_status_change"].side_effect = RuntimeError("telegram down")

    monitor.track_order("order-1", 100, clock.now)
    await monitor.tick()

    mock_deps["update_order_status"].assert_awaited_once_with("order-1", "failed")
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_async_callback_is_awaited(mock_deps: dict, clock) -> None:
    callback = AsyncMock(return_value=None)
    mock_deps["on_status_change"] = callback
    mock_deps["get_order_status"].return_value = _status("settled")
    monitor = OrderMonitor(**mock_deps, clock=clock)

    monitor.track_order("order-1", 100, clock.now)
    await monitor.tick()

    callback.assert_awaited_once()


@pytest.mark.asyncio
async def test_untrack_during_poll_drops_result(mock_deps: dict, clock) -> None:
    release = asyncio.Event()

    async def slow_fetch(order_id: str) -> StatusRecord:
        await release.wait()
        return StatusRecord(id=order_id, status="settled")

    mock_deps["get_order_status"] = AsyncMock(side_effect=slow_fetch)
    monitor = OrderMonitor(**mock_deps, clock=clock)
    monitor.track_order("order-1", 100, clock.now)

    tick = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)
    monitor.untrack_order("order-1")
    release.set()
    await tick

    mock_deps["on_status_change"].assert_not_called()
    mock_deps["update_order_status"].assert_not_awaited()
    assert monitor.tracked_count == 0


# ---------------------------------------------------------------------------
# concurrency cap
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrency_cap_defers_excess_orders(mock_deps: dict, clock) -> None:
    in_flight = 0
    peak = 0
    polled: list[str] = []

    async def fetch(order_id: str) -> StatusRecord:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        polled.append(order_id)
        in_flight -= 1
        return StatusRecord(id=order_id, status="pending")

    mock_deps["get_order_status"] = AsyncMock(side_effect=fetch)
    monitor = OrderMonitor(**mock_deps, max_concurrent=5, clock=clock)
    for i in range(7):
        monitor.track_order(f"order-{i}", i, clock.now)

    assert await monitor.tick() == 5
    assert peak <= 5
    assert sorted(polled) == [f"order-{i}" for i in range(5)]

    # The two deferred orders are still due on the next tick.
    assert await monitor.tick() == 2
    assert sorted(polled[5:]) == ["order-5", "order-6"]
    assert peak <= 5


@pytest.mark.asyncio
async def test_cap_applies_across_overlapping_ticks(mock_deps: dict, clock) -> None:
    release = asyncio.Event()

    async def slow_fetch(order_id: str) -> StatusRecord:
        await release.wait()
        return StatusRecord(id=order_id, status="pending")

    mock_deps["get_order_status"] = AsyncMock(side_effect=slow_fetch)
    monitor = OrderMonitor(**mock_deps, max_concurrent=2, clock=clock)
    for i in range(3):
        monitor.track_order(f"order-{i}", i, clock.now)

    first = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    # Both slots are taken and in-flight orders are never dispatched twice.
    assert await monitor.tick() == 0

    release.set()
    assert await first == 2
    assert await monitor.tick() == 1
    assert mock_deps["get_order_status"].await_count == 3


# ---------------------------------------------------------------------------
# start / stop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_and_stop(monitor: OrderMonitor) -> None:
    assert monitor.running is False
    monitor.start()
    assert monitor.running is True
    monitor.stop()
    assert monitor.running is False


@pytest.mark.asyncio
async def test_start_is_idempotent(monitor: OrderMonitor) -> None:
    monitor.start()
    scheduler = monitor._scheduler
    monitor.start()

    assert monitor._scheduler is scheduler
    assert len(scheduler.get_jobs()) == 1
    monitor.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent(monitor: OrderMonitor) -> None:
    monitor.stop()
    monitor.start()
    monitor.stop()
    monitor.stop()
    assert monitor.running is False


@pytest.mark.asyncio
async def test_stop_lets_in_flight_polls_finish(mock_deps: dict, clock) -> None:
    release = asyncio.Event()

    async def slow_fetch(order_id: str) -> StatusRecord:
        await release.wait()
        return StatusRecord(id=order_id, status="settled")

    mock_deps["get_order_status"] = AsyncMock(side_effect=slow_fetch)
    monitor = OrderMonitor(**mock_deps, clock=clock)
    monitor.track_order("order-1", 100, clock.now)

    monitor.start()
    tick = asyncio.create_task(monitor.tick())
    await asyncio.sleep(0)
    monitor.stop()

    release.set()
    await monitor.drain()
    await tick

    mock_deps["on_status_change"].assert_called_once()
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_stop_during_scheduled_tick_lets_poll_finish(mock_deps: dict, clock) -> None:
    fetch_started = asyncio.Event()
    release = asyncio.Event()

    async def slow_fetch(order_id: str) -> StatusRecord:
        fetch_started.set()
        await release.wait()
        return StatusRecord(id=order_id, status="settled")

    mock_deps["get_order_status"] = AsyncMock(side_effect=slow_fetch)
    monitor = OrderMonitor(**mock_deps, tick_interval=0.05, clock=clock)
    monitor.track_order("order-1", 100, clock.now)

    monitor.start()
    await asyncio.wait_for(fetch_started.wait(), timeout=5)
    monitor.stop()
    # Let the scheduler finish shutting down and cancel its running job.
    await asyncio.sleep(0.05)

    release.set()
    await asyncio.wait_for(monitor.drain(), timeout=5)

    mock_deps["update_order_status"].assert_awaited_once_with("order-1", "settled")
    mock_deps["on_status_change"].assert_called_once()
    assert monitor.tracked_count == 0


@pytest.mark.asyncio
async def test_async_callback_result_is_awaited(mock_deps: dict, clock) -> None:
    sent = AsyncMock(return_value=True)
    mock_deps["on_status_change"] = sent
    mock_deps["get_order_status"].return_value = _status("processing")
    monitor = OrderMonitor(**mock_deps, clock=clock)
    monitor.track_order("order-1", 100, clock.now)

    await monitor.tick()

    sent.assert_awaited_once()
    assert sent.await_args.args[:4] == (100, "order-1", "pending", "processing")


@pytest.mark.asyncio
async def test_scheduler_job_invokes_tick(mock_deps: dict, clock) -> None:
    mock_deps["get_order_status"].return_value = _status("settled")
    monitor = OrderMonitor(**mock_deps, tick_interval=0.05, clock=clock)
    monitor.track_order("order-1", 100, clock.now)

    monitor.start()
    try:
        for _ in range(100):
            if monitor.tracked_count == 0:
                break
            await asyncio.sleep(0.02)
    finally:
        monitor.stop()

    assert monitor.tracked_count == 0
    mock_deps["on_status_change"].assert_called_once()
