"""
database/circuit_breaker.py
──────────────────────────
Async circuit-breaker for order status writes.

States
  CLOSED    – DB healthy; status updates go directly to the order store.
  OPEN      – DB unreachable; updates buffered to ~/.order_status_buffer.jsonl.
  HALF_OPEN – Flush in progress; transitions to CLOSED on success, OPEN on failure.

Only the latest status per order is kept in the buffer, so replaying it is
idempotent and an older status never overwrites a newer one.

Usage
  breaker = StatusWriteBreaker(store.update_order_status)
  asyncio.create_task(breaker.flush_loop())   # start background drain task

  await breaker.write_status("shift-123", "settled")
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections import OrderedDict
from enum import Enum, auto
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# ── tunables ────────────────────────────────────────────────────────────────
_BUFFER_PATH       = Path.home() / ".order_status_buffer.jsonl"
_FLUSH_INTERVAL    = 60        # seconds between drain attempts
_FAILURE_THRESHOLD = 3         # consecutive write failures → OPEN
_DB_TIMEOUT        = 5.0       # seconds per individual update
_FLUSH_BATCH_SIZE  = 200       # max updates per flush attempt

StatusWriter = Callable[[str, str], Awaitable[None]]


class _State(Enum):
    CLOSED    = auto()
    OPEN      = auto()
    HALF_OPEN = auto()


class StatusWriteBreaker:
    """
    Wraps an order-status writer, buffering failed updates to a local JSON
    Lines file and retrying them on a background loop.

    Parameters
    ----------
    writer : async callable
        ``writer(order_id, status)``, e.g. ``OrderStore.update_order_status``.
    buffer_path : Path | None
        Override the default buffer file location (useful in tests).
    flush_interval : float
        Seconds between drain attempts.
    failure_threshold : int
        Consecutive failures before the circuit trips OPEN.
    """

    def __init__(
        self,
        writer: StatusWriter,
        *,
        buffer_path: Path | None = None,
        flush_interval: float = _FLUSH_INTERVAL,
        failure_threshold: int = _FAILURE_THRESHOLD,
    ) -> None:
        self._writer            = writer
        self._buffer_path       = buffer_path or _BUFFER_PATH
        self._flush_interval    = flush_interval
        self._failure_threshold = failure_threshold

        self._state        : _State                  = _State.CLOSED
        self._lock         : asyncio.Lock            = asyncio.Lock()
        self._buffer       : OrderedDict[str, str]   = OrderedDict()
        self._failure_count: int                     = 0
        self._last_failure : float                   = 0.0

        self._load_buffer()

    # ── public API ───────────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state.name

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    async def write_status(self, order_id: str, status: str) -> None:
        """
        Persist *status* for *order_id*. Never raises on DB errors.

        • CLOSED with nothing buffered for this order: write directly; on
          failure count it, buffer the update, and open the circuit once the
          threshold is reached.
        • Otherwise: buffer immediately (replacing any older buffered status).
        """
        async with self._lock:
            if self._state is _State.CLOSED and order_id not in self._buffer:
                try:
                    await self._db_write(order_id, status)
                    self._failure_count = 0
                    return
                except Exception as exc:
                    self._failure_count += 1
                    self._last_failure = time.monotonic()
                    logger.warning(
                        "Status write failed for %s (%d/%d): %s",
                        order_id, self._failure_count, self._failure_threshold, exc,
                    )
                    if self._failure_count >= self._failure_threshold:
                        self._state = _State.OPEN
                        logger.error(
                            "Circuit OPEN after %d failures — buffering to %s",
                            self._failure_count, self._buffer_path,
                        )

            self._buffer[order_id] = status
            self._buffer.move_to_end(order_id)
            self._append_to_file(order_id, status)

    async def flush_loop(self) -> None:
        """
        Background coroutine — schedule with ``asyncio.create_task()``.

        Every *flush_interval* seconds, drains buffered updates unless a
        flush is already running.  Runs forever until the task is cancelled.
        """
        logger.info("StatusWriteBreaker flush loop started (interval=%ss)", self._flush_interval)
        while True:
            await asyncio.sleep(self._flush_interval)
            if self._buffer and self._state is not _State.HALF_OPEN:
                await self.flush_now()

    async def flush_now(self) -> int:
        """
        Attempt to drain buffered updates to the store.

        1. Under lock: pop up to _FLUSH_BATCH_SIZE updates off the front.
        2. Outside lock: write each in order; stop on first error.
        3. Under lock: put un-flushed updates back at the front unless a newer
           status for the same order was buffered meanwhile, then persist the
           buffer to disk.

        Returns the number of updates written.
        """
        async with self._lock:
            if not self._buffer:
                self._state = _State.CLOSED
                return 0
            self._state = _State.HALF_OPEN
            pending: list[tuple[str, str]] = [
                self._buffer.popitem(last=False)
                for _ in range(min(_FLUSH_BATCH_SIZE, len(self._buffer)))
            ]

        logger.info("Circuit HALF_OPEN — attempting to flush %d buffered updates", len(pending))

        failed_from = len(pending)
        for i, (order_id, status) in enumerate(pending):
            try:
                await self._db_write(order_id, status)
            except Exception as exc:
                logger.warning("Flush failed at update %d (%s): %s", i, order_id, exc)
                failed_from = i
                break

        succeeded = pending[:failed_from]
        remaining = pending[failed_from:]

        async with self._lock:
            if remaining:
                for order_id, status in reversed(remaining):
                    if order_id in self._buffer:
                        continue
                    self._buffer[order_id] = status
                    self._buffer.move_to_end(order_id, last=False)
                self._state = _State.OPEN
                self._failure_count += 1
                logger.warning(
                    "Partial flush: %d succeeded, %d re-buffered. Circuit OPEN.",
                    len(succeeded), len(remaining),
                )
            elif not self._buffer:
                self._state = _State.CLOSED
                self._failure_count = 0
                logger.info("Circuit CLOSED — all %d buffered updates flushed.", len(succeeded))
            else:
                self._state = _State.OPEN
                logger.info(
                    "Batch flushed (%d updates); %d remain — will retry.",
                    len(succeeded), len(self._buffer),
                )
            self._persist_buffer()
        return len(succeeded)

    # ── internal helpers ─────────────────────────────────────────────────────

    async def _db_write(self, order_id: str, status: str) -> None:
        async with asyncio.timeout(_DB_TIMEOUT):
            await self._writer(order_id, status)

    # ── file I/O (called under lock) ─────────────────────────────────────────

    def _append_to_file(self, order_id: str, status: str) -> None:
        """Append a single JSON line; fsync so a crash keeps the update."""
        try:
            with self._buffer_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps({"order_id": order_id, "status": status}) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            logger.error("Failed to append to buffer file %s: %s", self._buffer_path, exc)

    def _persist_buffer(self) -> None:
        """Atomically rewrite the buffer file via write-to-temp + rename."""
        if not self._buffer:
            self._buffer_path.unlink(missing_ok=True)
            return
        tmp = self._buffer_path.with_suffix(".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                for order_id, status in self._buffer.items():
                    fh.write(json.dumps({"order_id": order_id, "status": status}) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            tmp.rename(self._buffer_path)
        except OSError as exc:
            logger.error("Failed to persist buffer file: %s", exc)

    def _load_buffer(self) -> None:
        """
        Load buffered updates from disk on startup.  Later lines win.

        If anything was recovered the circuit starts OPEN so flush_loop()
        drains it on its first pass.
        """
        if not self._buffer_path.exists():
            return
        try:
            with self._buffer_path.open("r", encoding="utf-8") as fh:
                for lineno, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                        order_id, status = entry["order_id"], entry["status"]
                    except (json.JSONDecodeError, KeyError, TypeError):
                        logger.warning(
                            "Skipping malformed line %d in %s",
                            lineno, self._buffer_path,
                        )
                        continue
                    self._buffer[order_id] = status
                    self._buffer.move_to_end(order_id)
        except OSError as exc:
            logger.warning("Could not read buffer file %s: %s", self._buffer_path, exc)
            return

        if self._buffer:
            self._state = _State.OPEN
            logger.info(
                "Recovered %d buffered status updates from %s — circuit starts OPEN",
                len(self._buffer), self._buffer_path,
            )
