"""
core/order_monitor.py — Background status monitor for swap orders.

The OrderMonitor keeps every outstanding SideShift order in an in-memory
registry, polls the status provider on an age-adaptive schedule (see
core/backoff.py), persists each detected transition and notifies the order
owner.  Orders leave the registry once they reach a terminal state.

All collaborators are injected so the monitor can be driven from tests with
a fake clock and mocked I/O:

    monitor = OrderMonitor(
        get_order_status=adapter.get_order_status,
        update_order_status=breaker.write_status,
        get_pending_orders=store.get_pending_orders,
        on_status_change=notifier.on_status_change,
    )
    await monitor.load_pending_orders()
    monitor.start()

Ticks run on an APScheduler interval job with ``max_instances=1`` so two
ticks never overlap.  ``stop()`` is a soft stop: polls already in flight
finish and may still persist and notify.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from core.order_registry import OrderRegistry
from models.order import PersistedOrder, StatusRecord, TrackedOrder, is_terminal

logger = logging.getLogger(__name__)

# ── tunables ────────────────────────────────────────────────────────────────
TICK_INTERVAL_SECONDS = 10.0   # how often the tick loop runs
MAX_CONCURRENT = 5             # max in-flight status requests to SideShift
_TICK_JOB_ID = "order_monitor_tick"

StatusFetcher = Callable[[str], Awaitable[Union[StatusRecord, Mapping[str, Any]]]]
StatusWriter = Callable[[str, str], Awaitable[None]]
PendingOrdersLoader = Callable[[], Awaitable[Sequence[PersistedOrder]]]
StatusChangeCallback = Callable[[int, str, str, str, StatusRecord], Optional[Awaitable[Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderMonitor:
    """Tracks outstanding orders and reports their status transitions.

    Args:
        get_order_status:    Coroutine returning the provider's current status
                             for an order id. Raises on network/provider errors.
        update_order_status: Coroutine persisting ``(order_id, new_status)``.
        get_pending_orders:  Coroutine returning persisted non-terminal orders.
        on_status_change:    Callback (sync or async) fired once per transition
                             with ``(owner_id, order_id, old, new, record)``.
        tick_interval:       Seconds between ticks (default 10).
        max_concurrent:      Cap on in-flight status polls (default 5).
        clock:               Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        *,
        get_order_status: StatusFetcher,
        update_order_status: StatusWriter,
        get_pending_orders: PendingOrdersLoader,
        on_status_change: StatusChangeCallback,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        max_concurrent: int = MAX_CONCURRENT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")

        self._get_order_status = get_order_status
        self._update_order_status = update_order_status
        self._get_pending_orders = get_pending_orders
        self._on_status_change = on_status_change
        self.tick_interval = tick_interval
        self.max_concurrent = max_concurrent
        self._clock = clock

        self._registry = OrderRegistry(clock=clock)
        self._scheduler: AsyncIOScheduler | None = None
        self._in_flight: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------ #
    # Lifecycle                                                           #
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        """Start the background tick loop. No-op when already running."""
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self.tick_interval,
            id=_TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "OrderMonitor started: tracking %d order(s), tick=%.1fs, max_concurrent=%d",
            self._registry.count(),
            self.tick_interval,
            self.max_concurrent,
        )

    def stop(self) -> None:
        """Cancel the tick loop. Safe to call multiple times.

        Polls already in flight are left to complete; use :meth:`drain` to
        wait for them.
        """
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("OrderMonitor stopped (%d poll(s) in flight)", len(self._in_flight))

    async def drain(self) -> None:
        """Wait until every in-flight poll has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Tracking                                                            #
    # ------------------------------------------------------------------ #

    def track_order(
        self,
        order_id: str,
        owner_id: int,
        created_at: Optional[datetime] = None,
    ) -> None:
        """Add a newly placed order. Tracking an id twice is a no-op."""
        self._registry.track(order_id, owner_id, created_at)

    def untrack_order(self, order_id: str) -> None:
        """Stop tracking an order (e.g. user cancellation). Absent ids are ignored."""
        if self._registry.untrack(order_id):
            logger.info("Stopped tracking order %s", order_id)

    async def load_pending_orders(self) -> int:
        """Reconcile the registry with non-terminal orders from the database.

        Call once on startup before :meth:`start`.  A storage failure is
        logged and the monitor keeps whatever it already tracks.

        Returns:
            The number of orders reconciled.
        """
        try:
            pending = await self._get_pending_orders()
        except Exception:
            logger.exception("Failed to load pending orders — starting with %d tracked", self._registry.count())
            return 0

        reconciled = self._registry.reconcile(pending)
        logger.info("Loaded %d pending order(s) from DB", reconciled)
        return reconciled

    @property
    def tracked_count(self) -> int:
        return self._registry.count()

    def get_tracked_order_ids(self) -> list[str]:
        """Snapshot of tracked order ids (for debugging and tests)."""
        return self._registry.list_ids()

    # ------------------------------------------------------------------ #
    # Tick loop                                                           #
    # ------------------------------------------------------------------ #

    async def tick(self) -> int:
        """Poll every due order, respecting the concurrency cap.

        Due orders beyond the remaining budget are left for a later tick.

        Returns:
            The number of polls dispatched by this tick.
        """
        now = self._clock()
        due = [
            order for order in self._registry.due(now)
            if order.order_id not in self._in_flight
        ]
        if not due:
            return 0

        budget = self.max_concurrent - len(self._in_flight)
        if budget <= 0:
            logger.debug("Concurrency cap reached; deferring %d due order(s)", len(due))
            return 0

        batch = due[:budget]
        if len(due) > len(batch):
            logger.debug(
                "Polling %d order(s), deferring %d to the next tick",
                len(batch),
                len(due) - len(batch),
            )

        tasks = [self._dispatch(order) for order in batch]
        # Shielded: scheduler shutdown cancels this tick, never the polls it started.
        results = await asyncio.gather(
            *(asyncio.shield(task) for task in tasks), return_exceptions=True
        )
        for order, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error("Poll task for order %s ended with %r", order.order_id, result)
        return len(batch)

    def _dispatch(self, order: TrackedOrder) -> asyncio.Task:
        task = asyncio.create_task(self.poll_order(order), name=f"poll-order-{order.order_id}")
        self._in_flight[order.order_id] = task
        task.add_done_callback(lambda _t, order_id=order.order_id: self._in_flight.pop(order_id, None))
        return task

    async def poll_order(self, order: TrackedOrder) -> None:
        """Fetch one order's status and process a transition if there is one."""
        try:
            raw = await self._get_order_status(order.order_id)
            record = raw if isinstance(raw, StatusRecord) else StatusRecord.model_validate(raw)
        except Exception as exc:
            logger.warning("Error polling order %s: %s — will retry next tick", order.order_id, exc)
            return
        finally:
            order.last_checked_at = self._clock()

        if self._registry.get(order.order_id) is not order:
            logger.info(
                "Order %s was untracked during poll; ignoring status %s",
                order.order_id,
                record.status,
            )
            return

        old_status = order.last_known_status
        new_status = record.status
        if new_status == old_status:
            return

        order.last_known_status = new_status
        logger.info("Order %s status changed: %s → %s", order.order_id, old_status, new_status)

        await self._persist_status(order.order_id, new_status)
        await self._notify(order, old_status, new_status, record)

        if is_terminal(new_status):
            self._registry.untrack(order.order_id)
            logger.info("Order %s reached terminal state: %s", order.order_id, new_status)

    async def _persist_status(self, order_id: str, new_status: str) -> None:
        """Write the new status; failures are logged, the in-memory state stands."""
        try:
            await self._update_order_status(order_id, new_status)
        except Exception:
            logger.exception("Failed to persist status %s for order %s", new_status, order_id)

    async def _notify(
        self,
        order: TrackedOrder,
        old_status: str,
        new_status: str,
        record: StatusRecord,
    ) -> None:
        """Fire the status-change callback once. Failures are not retried."""
        try:
            result = self._on_status_change(
                order.owner_id, order.order_id, old_status, new_status, record
            )
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Status-change callback failed for order %s (owner %s)",
                order.order_id,
                order.owner_id,
            )
