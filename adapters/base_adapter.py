from __future__ import annotations

from abc import ABC, abstractmethod

from models.order import StatusRecord


class StatusProvider(ABC):
    """Abstract contract for swap-order status providers."""

    @abstractmethod
    async def get_order_status(self, order_id: str) -> StatusRecord:
        """Fetch the current status of one order; raise on provider errors."""

        raise NotImplementedError
