"""order_monitor_worker.py — long-running swap order status monitor.

Wires the OrderMonitor to its production collaborators:

    status provider   SideShiftAdapter      GET /shifts/{id}
    persistence       OrderStore            Postgres ``orders`` table
    write buffering   StatusWriteBreaker    replays failed status writes
    notifications     TelegramOrderNotifier sendMessage to the order owner

On startup, non-terminal orders are reloaded from Postgres before the tick
loop starts.  SIGINT/SIGTERM stop the loop, wait for in-flight polls, then
close the HTTP client and the DB pool.

Usage
-----
    python -m workers.order_monitor_worker
    python -m workers.order_monitor_worker --once --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Make sure project root is on sys.path when run directly
# ---------------------------------------------------------------------------
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import httpx

from adapters.sideshift_adapter import SideShiftAdapter
from core.order_monitor import OrderMonitor
from database.circuit_breaker import StatusWriteBreaker
from database.order_store import OrderStore
from logging_config import get_monitor_logger, setup_logging
from monitor_config import MonitorEnvironmentConfig, load_monitor_environment
from notifications.order_notifier import TelegramOrderNotifier

LOGGER = get_monitor_logger()


async def run_monitor(config: MonitorEnvironmentConfig, *, once: bool = False) -> None:
    """Run the monitor until a stop signal arrives (or for one tick with *once*)."""
    store = OrderStore(
        dsn=config.dsn,
        min_size=config.db_pool_min,
        max_size=config.db_pool_max,
        command_timeout=config.db_command_timeout,
    )
    try:
        await store.connect()
    except Exception:
        # Store methods reconnect lazily; reconciliation and writes degrade until then.
        LOGGER.exception("Order store unavailable at startup — continuing without it")

    http_client = httpx.AsyncClient(timeout=config.sideshift_timeout_seconds)
    adapter = SideShiftAdapter(
        base_url=config.sideshift_base_url,
        api_key=config.sideshift_api_key,
        client_ip=config.sideshift_client_ip,
        timeout=config.sideshift_timeout_seconds,
        client=http_client,
    )
    notifier = TelegramOrderNotifier(bot_token=config.telegram_bot_token, client=http_client)
    breaker = StatusWriteBreaker(
        store.update_order_status,
        buffer_path=config.status_buffer_path,
        flush_interval=config.status_flush_interval_seconds,
        failure_threshold=config.status_failure_threshold,
    )
    monitor = OrderMonitor(
        get_order_status=adapter.get_order_status,
        update_order_status=breaker.write_status,
        get_pending_orders=store.get_pending_orders,
        on_status_change=notifier.on_status_change,
        tick_interval=config.tick_interval_seconds,
        max_concurrent=config.max_concurrent_polls,
    )

    flush_task: asyncio.Task | None = None
    try:
        await monitor.load_pending_orders()

        if once:
            polled = await monitor.tick()
            if breaker.pending_count:
                await breaker.flush_now()
            LOGGER.info("Single tick polled %d order(s); %d still tracked", polled, monitor.tracked_count)
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)

        flush_task = asyncio.create_task(breaker.flush_loop(), name="status-buffer-flush-loop")
        monitor.start()
        LOGGER.info("Order monitor running — tracking %d order(s)", monitor.tracked_count)
        await stop_event.wait()
        LOGGER.info("Stop signal received, shutting down")
    finally:
        monitor.stop()
        await monitor.drain()
        if flush_task is not None:
            flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await flush_task
        if breaker.pending_count:
            LOGGER.warning(
                "%d status update(s) still buffered; they will be replayed on next start",
                breaker.pending_count,
            )
        await http_client.aclose()
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Swap order status monitor")
    parser.add_argument(
        "--env-file",
        default=str(_ROOT / ".env"),
        help="dotenv file to load before reading the environment",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="overrides LOG_LEVEL",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="reload pending orders, run a single tick and exit",
    )
    args = parser.parse_args()

    config = load_monitor_environment(args.env_file)
    setup_logging(args.log_level)

    try:
        asyncio.run(run_monitor(config, once=args.once))
    except KeyboardInterrupt:
        LOGGER.info("Order monitor stopped by user.")


if __name__ == "__main__":
    main()
