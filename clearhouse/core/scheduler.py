"""
Scheduler - periodic drivers for the settlement engines.

Two independent PeriodicTasks run on the asyncio loop:
- auction: finalize expired auctions (default every 5 minutes)
- maturity: open payments for matured claims, then escalate overdue ones
  (default hourly)

Each task ticks once at start and then on interval boundaries measured
from its start time. A tick runs the synchronous engine pass in a worker
thread as its own asyncio task, so a slow pass never delays the next
boundary. Exceptions are logged and never stop the task.

The scheduler keeps no settlement state; every pass re-reads the store.
"""

import asyncio
from typing import Callable, Optional, Set

from clearhouse.utils.logger import get_logger

logger = get_logger("scheduler")


class PeriodicTask:
    """
    Runs a blocking callable on a fixed cadence.

    Attributes:
        name: Label used in logs
        interval: Seconds between boundaries
        ticks: Passes started
        failures: Passes that raised
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], object]):
        if interval <= 0:
            raise ValueError("Interval must be positive")
        self.name = name
        self.interval = interval
        self.fn = fn
        self.ticks = 0
        self.failures = 0
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start ticking; the first pass begins immediately."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler '{self.name}' started (every {self.interval}s)")

    async def stop(self) -> None:
        """Stop scheduling and wait for passes already running."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info(f"Scheduler '{self.name}' stopped")

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        boundary = 0
        while self._running:
            self._spawn()
            boundary += 1
            delay = started + boundary * self.interval - loop.time()
            if delay < 0:
                # Skip boundaries that already passed
                missed = int(-delay // self.interval) + 1
                boundary += missed
                delay += missed * self.interval
            await asyncio.sleep(delay)

    def _spawn(self) -> None:
        task = asyncio.create_task(self._tick())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            result = await asyncio.to_thread(self.fn)
            logger.debug(f"Scheduler '{self.name}' pass done: {result}")
        except Exception:
            self.failures += 1
            logger.exception(f"Scheduler '{self.name}' pass failed")


class SettlementScheduler:
    """Owns the auction and maturity periodic tasks."""

    def __init__(self, service, config=None):
        self.service = service
        self.config = config or service.config
        self.auction_task = PeriodicTask(
            "auction", self.config.auction_interval_seconds, service.process_expired_auctions
        )
        self.maturity_task = PeriodicTask(
            "maturity", self.config.maturity_interval_seconds, self.maturity_pass
        )

    def maturity_pass(self) -> dict:
        """Create payments, then escalate overdue ones; each step runs even if the other fails."""
        result = {"matured": None, "overdue": None}
        try:
            result["matured"] = self.service.process_matured_claims()
        except Exception:
            logger.exception("Maturity processing failed")
        try:
            result["overdue"] = self.service.mark_overdue_payments()
        except Exception:
            logger.exception("Overdue escalation failed")
        return result

    async def start(self) -> None:
        await self.auction_task.start()
        await self.maturity_task.start()

    async def stop(self) -> None:
        await self.auction_task.stop()
        await self.maturity_task.stop()

    async def run_forever(self) -> None:
        """Start both tasks and block until cancelled."""
        await self.start()
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()
