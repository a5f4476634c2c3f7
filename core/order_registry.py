"""
core/order_registry.py — In-memory registry of orders under observation.

The registry is owned by a single OrderMonitor and is only mutated from the
monitor's event loop, so it carries no lock.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional

from core.backoff import interval_for
from models.order import (
    INITIAL_STATUS,
    PersistedOrder,
    TrackedOrder,
    is_terminal,
    to_utc,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderRegistry:
    """Keyed collection of :class:`TrackedOrder` objects, one per order id."""

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._orders: dict[str, TrackedOrder] = {}

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._orders

    def __iter__(self) -> Iterator[TrackedOrder]:
        return iter(list(self._orders.values()))

    def track(
        self,
        order_id: str,
        owner_id: int,
        created_at: Optional[datetime] = None,
    ) -> bool:
        """Start tracking *order_id*. Returns False if it was already tracked."""
        if order_id in self._orders:
            return False
        self._orders[order_id] = TrackedOrder(
            order_id=order_id,
            owner_id=owner_id,
            created_at=to_utc(created_at) if created_at is not None else self._clock(),
            last_checked_at=None,
            last_known_status=INITIAL_STATUS,
        )
        logger.info("Now tracking order %s (total: %d)", order_id, len(self._orders))
        return True

    def untrack(self, order_id: str) -> bool:
        """Stop tracking *order_id*. Absent ids are ignored."""
        return self._orders.pop(order_id, None) is not None

    def get(self, order_id: str) -> Optional[TrackedOrder]:
        return self._orders.get(order_id)

    def count(self) -> int:
        return len(self._orders)

    def list_ids(self) -> list[str]:
        return list(self._orders.keys())

    def reconcile(self, persisted_orders: Iterable[PersistedOrder]) -> int:
        """Track every persisted non-terminal order, keeping its stored status.

        The stored status replaces the ``pending`` sentinel so that the next
        poll only reports a change when the provider really moved on.
        """
        reconciled = 0
        for persisted in persisted_orders:
            if is_terminal(persisted.status):
                logger.debug(
                    "Skipping order %s already in terminal state %s",
                    persisted.external_order_id,
                    persisted.status,
                )
                continue
            self.track(
                persisted.external_order_id,
                persisted.owner_id,
                persisted.created_at,
            )
            self._orders[persisted.external_order_id].last_known_status = persisted.status
            reconciled += 1
        return reconciled

    def due(self, now: datetime) -> list[TrackedOrder]:
        """Return orders whose backoff interval has elapsed, in insertion order."""
        due_orders: list[TrackedOrder] = []
        for order in self._orders.values():
            if order.last_checked_at is None:
                due_orders.append(order)
                continue
            threshold = interval_for(now - order.created_at)
            if now - order.last_checked_at >= threshold:
                due_orders.append(order)
        return due_orders
