from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.order_monitor import OrderMonitor
from models.order import StatusRecord


class FakeClock:
    """Manually advanced UTC clock for driving the tick loop in tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_deps() -> dict[str, AsyncMock | MagicMock]:
    return {
        "get_order_status": AsyncMock(return_value=StatusRecord(id="test", status="pending")),
        "update_order_status": AsyncMock(return_value=None),
        "get_pending_orders": AsyncMock(return_value=[]),
        "on_status_change": MagicMock(return_value=None),
    }


@pytest.fixture
def monitor(mock_deps: dict, clock: FakeClock) -> OrderMonitor:
    return OrderMonitor(**mock_deps, clock=clock)
