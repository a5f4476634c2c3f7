from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime
from typing import Any, Optional

import asyncpg

from models.order import INITIAL_STATUS, TERMINAL_STATUSES, PersistedOrder, to_utc

logger = logging.getLogger(__name__)


class OrderStore:
    """asyncpg-backed storage for placed swap orders.

    Serves the monitor's persistence bridge: ``get_pending_orders`` for
    startup reconciliation and ``update_order_status`` for each detected
    transition.
    """

    def __init__(
        self,
        *,
        dsn: str | None = None,
        pool: asyncpg.Pool | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
        command_timeout: float | None = None,
    ) -> None:
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = pool
        self._db_lock = asyncio.Lock()
        self.min_size = min_size if min_size is not None else int(os.getenv("DB_POOL_MIN", "1"))
        self.max_size = max_size if max_size is not None else int(os.getenv("DB_POOL_MAX", "10"))
        self.command_timeout = (
            command_timeout if command_timeout is not None else float(os.getenv("DB_COMMAND_TIMEOUT", "10"))
        )

    @property
    def dsn(self) -> str:
        if self._dsn:
            return self._dsn
        host = os.getenv("DB_HOST", "localhost")
        port = os.getenv("DB_PORT", "5432")
        name = os.getenv("DB_NAME", "swap_orders")
        user = os.getenv("DB_USER", "swapbot")
        password = os.getenv("DB_PASS", "")
        return f"postgresql://{user}:{password}@{host}:{port}/{name}"

    @property
    def _redacted_dsn(self) -> str:
        return re.sub(r":(.[^:@]*)@", ":***@", self.dsn, count=1)

    async def connect(self) -> None:
        if self._pool is not None:
            return
        async with self._db_lock:
            if self._pool is not None:
                return
            logger.info("Connecting order store to %s", self._redacted_dsn)
            self._pool = await asyncpg.create_pool(
                dsn=self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout,
            )
            await self.ensure_schema()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("DB pool is not initialized")
        return self._pool

    async def _acquire_pool(self) -> asyncpg.Pool:
        await self.connect()
        return self._require_pool()

    async def ensure_schema(self) -> None:
        pool = self._require_pool()

        create_orders = """
        CREATE TABLE IF NOT EXISTS orders (
            id SERIAL PRIMARY KEY,
            telegram_id BIGINT NOT NULL,
            sideshift_order_id TEXT NOT NULL UNIQUE,
            quote_id TEXT NOT NULL,
            from_asset TEXT NOT NULL,
            from_network TEXT NOT NULL,
            from_amount DOUBLE PRECISION NOT NULL,
            to_asset TEXT NOT NULL,
            to_network TEXT NOT NULL,
            settle_amount TEXT NOT NULL,
            deposit_address TEXT NOT NULL,
            deposit_memo TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            tx_hash TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """

        create_indexes = """
        CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status);
        CREATE INDEX IF NOT EXISTS idx_orders_owner ON orders (telegram_id, created_at DESC);
        """

        async with pool.acquire() as conn:
            await conn.execute(create_orders)
            await conn.execute(create_indexes)

    async def insert_order(
        self,
        *,
        telegram_id: int,
        sideshift_order_id: str,
        quote_id: str,
        from_asset: str,
        from_network: str,
        from_amount: float,
        to_asset: str,
        to_network: str,
        settle_amount: str,
        deposit_address: str,
        deposit_memo: str | None = None,
        status: str = INITIAL_STATUS,
    ) -> None:
        """Record a freshly placed order so it survives restarts."""
        pool = await self._acquire_pool()
        query = """
        INSERT INTO orders (
            telegram_id, sideshift_order_id, quote_id,
            from_asset, from_network, from_amount,
            to_asset, to_network, settle_amount,
            deposit_address, deposit_memo, status
        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
        ON CONFLICT (sideshift_order_id) DO NOTHING;
        """
        async with pool.acquire() as conn:
            await conn.execute(
                query,
                telegram_id,
                sideshift_order_id,
                quote_id,
                from_asset,
                from_network,
                from_amount,
                to_asset,
                to_network,
                settle_amount,
                deposit_address,
                deposit_memo,
                status,
            )

    async def update_order_status(self, sideshift_order_id: str, new_status: str) -> None:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE orders SET status = $1 WHERE sideshift_order_id = $2;",
                new_status,
                sideshift_order_id,
            )
        if result == "UPDATE 0":
            logger.warning("Status update for unknown order %s ignored", sideshift_order_id)

    async def get_pending_orders(self) -> list[PersistedOrder]:
        """Return every order that has not reached a terminal state."""
        pool = await self._acquire_pool()
        query = """
        SELECT sideshift_order_id, telegram_id, status, created_at
        FROM orders
        WHERE status <> ALL($1::text[])
        ORDER BY created_at ASC;
        """
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, sorted(TERMINAL_STATUSES))
        return [self.persisted_from_row(dict(row)) for row in rows]

    async def get_order_by_external_id(self, sideshift_order_id: str) -> dict[str, Any] | None:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM orders WHERE sideshift_order_id = $1 LIMIT 1;",
                sideshift_order_id,
            )
        return dict(row) if row is not None else None

    async def get_user_history(self, telegram_id: int, *, limit: int = 10) -> list[dict[str, Any]]:
        pool = await self._acquire_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM orders WHERE telegram_id = $1 ORDER BY created_at DESC LIMIT $2;",
                telegram_id,
                limit,
            )
        return [dict(row) for row in rows]

    @staticmethod
    def persisted_from_row(row: dict[str, Any]) -> PersistedOrder:
        created_at: datetime | None = row.get("created_at")
        return PersistedOrder(
            external_order_id=row["sideshift_order_id"],
            owner_id=int(row["telegram_id"]),
            status=row["status"],
            created_at=to_utc(created_at) if created_at is not None else None,
        )
