"""models/order.py — Data models for the swap order status monitor.

Dataclasses and pydantic models shared by the OrderMonitor, the SideShift
adapter, the Postgres order store and the Telegram notifier.
These are pure in-memory models; persistence is handled by database/order_store.py.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ShiftStatus(str, Enum):
    """Status values reported by the SideShift /shifts endpoint."""
    WAITING = "waiting"        # Awaiting the user's deposit
    PENDING = "pending"        # Deposit detected, not yet confirmed
    PROCESSING = "processing"  # Deposit confirmed, swap in progress
    REVIEW = "review"          # Held for manual review
    SETTLING = "settling"      # Settlement transaction broadcast
    SETTLED = "settled"        # Funds delivered
    REFUND = "refund"          # Refund requested
    REFUNDING = "refunding"    # Refund transaction broadcast
    REFUNDED = "refunded"      # Funds returned to the user
    EXPIRED = "expired"        # No deposit before the quote expired
    FAILED = "failed"


#: Orders in these states never change again and stop being tracked.
TERMINAL_STATUSES: frozenset[str] = frozenset({
    ShiftStatus.SETTLED.value,
    ShiftStatus.EXPIRED.value,
    ShiftStatus.REFUNDED.value,
    ShiftStatus.FAILED.value,
})

#: Status assigned to a freshly tracked order before its first poll.
INITIAL_STATUS = ShiftStatus.PENDING.value


def is_terminal(status: str) -> bool:
    """Return True when *status* is one of the terminal shift states."""
    return status in TERMINAL_STATUSES


def to_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Core data models
# ---------------------------------------------------------------------------


@dataclass
class TrackedOrder:
    """One order under observation by the monitor."""

    order_id: str                              # SideShift shift id (registry key)
    owner_id: int                              # Telegram chat id of the owner
    created_at: datetime
    last_checked_at: Optional[datetime] = None  # None → never polled
    last_known_status: str = INITIAL_STATUS


@dataclass(slots=True)
class PersistedOrder:
    """Minimal view of a row in the ``orders`` table used for reconciliation."""

    external_order_id: str
    owner_id: int
    status: str
    created_at: Optional[datetime] = None


class StatusRecord(BaseModel):
    """Shift status payload returned by the status provider.

    Only ``status`` is interpreted by the monitor; every other field is
    passed through to the notification sink for display.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = ""
    status: str
    deposit_coin: Optional[str] = Field(default=None, alias="depositCoin")
    deposit_network: Optional[str] = Field(default=None, alias="depositNetwork")
    settle_coin: Optional[str] = Field(default=None, alias="settleCoin")
    settle_network: Optional[str] = Field(default=None, alias="settleNetwork")
    deposit_amount: Optional[str] = Field(default=None, alias="depositAmount")
    settle_amount: Optional[str] = Field(default=None, alias="settleAmount")
    deposit_hash: Optional[str] = Field(default=None, alias="depositHash")
    settle_hash: Optional[str] = Field(default=None, alias="settleHash")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
