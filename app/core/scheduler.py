"""
app/core/scheduler.py
═══════════════════════════════════════════════════════════════════════════════
Background refresh scheduler with strict guarantees:

  1. ONE driver loop per scheduler (guarded by _running flag)
  2. Every registered key refreshes immediately on start, then on each tick
  3. One trigger stream, fanned out → each key refreshes in its own task,
     so a slow or failing key never delays the others
  4. Slow refresh → that key skips the next tick, never queues
  5. Failed refresh → logged, last valid cache kept, next tick retries
  6. cancel() stops future ticks; an in-flight fetch is allowed to finish
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Iterable, Optional

from app.core.cache import CacheCoordinator, utc_now
from app.core.triggers import PeriodicTrigger

log = logging.getLogger("scheduler")


class RefreshHandle:
    """Returned by RefreshScheduler.start(). cancel() is idempotent."""

    def __init__(self, scheduler: "RefreshScheduler"):
        self._scheduler = scheduler

    def cancel(self) -> None:
        self._scheduler._stop_ticks()

    @property
    def cancelled(self) -> bool:
        return self._scheduler._stop.is_set()

    async def wait(self) -> None:
        """Wait for the driver loop and any in-flight refreshes to finish."""
        await self._scheduler._drain()


class RefreshScheduler:
    def __init__(
        self,
        coordinator: CacheCoordinator,
        trigger: PeriodicTrigger,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._coordinator = coordinator
        self._trigger = trigger
        self._clock = clock
        self._keys: list[str] = []
        self._inflight: dict[str, asyncio.Task] = {}
        self._driver: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._running = False

    # ── Per-key job ───────────────────────────────────────────────────────────

    async def _refresh(self, key: str) -> None:
        t0 = time.time()
        try:
            log.info(f"Refreshing cache for: {key}")
            entry = await self._coordinator.write_fresh(key)
            log.info(
                f"Refreshed {key} in {time.time() - t0:.1f}s "
                f"({len(entry.history)} versions kept)"
            )
        except Exception as ex:
            # cache not written → previous valid data stays
            log.error(f"Failed to refresh cache for {key}: {ex}")

    def _fan_out(self) -> None:
        for key in self._keys:
            running = self._inflight.get(key)
            if running is not None and not running.done():
                log.warning(f"Previous refresh of {key} still running — skipping tick")
                continue
            task = asyncio.create_task(self._refresh(key), name=f"refresh:{key}")
            self._inflight[key] = task

    # ── Driver loop ───────────────────────────────────────────────────────────

    async def _drive(self) -> None:
        self._fan_out()
        last = self._clock()
        while not self._stop.is_set():
            nxt = self._trigger.next_fire_time(last, self._clock())
            delay = max(0.0, (nxt - self._clock()).total_seconds())
            log.debug(f"Next refresh tick in {delay:.1f}s")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass
            last = nxt
            self._fan_out()
        log.info("Refresh scheduler stopped")

    # ── Public API ────────────────────────────────────────────────────────────

    def start(self, keys: Iterable[str]) -> RefreshHandle:
        """
        Called once at startup, inside the running event loop.
        Never starts a second driver — guarded by _running flag.
        """
        handle = RefreshHandle(self)
        if self._running:
            log.warning("Scheduler already running — ignoring duplicate start")
            return handle
        self._running = True
        self._keys = list(dict.fromkeys(keys))
        log.info(f"Scheduler started for {len(self._keys)} keys ({self._trigger!r})")
        self._driver = asyncio.create_task(self._drive(), name="refresh-driver")
        return handle

    def _stop_ticks(self) -> None:
        if not self._stop.is_set():
            log.info("Stopping refresh scheduler")
            self._stop.set()

    async def _drain(self) -> None:
        if self._driver is not None:
            await self._driver
        pending = [t for t in self._inflight.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
