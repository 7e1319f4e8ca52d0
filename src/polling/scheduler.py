"""
Scheduler running one timer loop per source kind.

Each kind ticks on its own interval. The first tick fires immediately; after
a cycle the next tick is the first interval boundary that has not passed
yet, so a cycle that overruns its interval skips ticks instead of queueing
them. Kinds run as independent asyncio tasks: a slow or failing GitHub loop
never delays feeds.
"""

import asyncio
import math
import random
from collections.abc import Sequence

import structlog

from src.observability.logging import bind_context
from src.observability.metrics import MetricsCollector, get_metrics
from src.polling.cycle import CycleReport, PollCycle

logger = structlog.get_logger(__name__)


def next_tick_after(previous: float, interval: float, now: float) -> float:
    """First tick ``previous + k * interval`` (k >= 1) strictly after ``now``."""
    due = previous + interval
    if due > now:
        return due
    missed = math.floor((now - previous) / interval)
    return previous + (missed + 1) * interval


def restart_delay(failures: int, base: float, maximum: float, jitter: float = 0.25) -> float:
    """Delay before restart number ``failures`` (0-based): doubling, capped, jittered."""
    delay = min(base * 2 ** failures, maximum)
    delay += delay * random.uniform(-jitter, jitter)
    return min(maximum, max(0.0, delay))


class Scheduler:
    """
    Runs every poll cycle on its own interval until stopped.

    Usage:
        scheduler = Scheduler(cycles)
        task = asyncio.create_task(scheduler.run())
        ...
        scheduler.stop()
        await task
    """

    def __init__(
        self,
        cycles: Sequence[PollCycle],
        restart_backoff_base: float = 5.0,
        restart_backoff_max: float = 300.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._cycles = list(cycles)
        self._backoff_base = restart_backoff_base
        self._backoff_max = restart_backoff_max
        self._metrics = metrics or get_metrics()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        # Consecutive failed loops per kind, reset by a completed cycle.
        self._failures: dict[str, int] = {}

    @property
    def cycles(self) -> list[PollCycle]:
        return list(self._cycles)

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        """Run all kinds concurrently; returns once stop() was called."""
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._run_kind(cycle),
                name=f"poll_{cycle.kind.value}",
            )
            for cycle in self._cycles
        ]
        logger.info(
            "Scheduler started",
            kinds=[cycle.kind.value for cycle in self._cycles],
        )
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._tasks = []
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Ask every loop to exit; a cycle already running completes first."""
        logger.info("Scheduler stop requested")
        self._stop_event.set()

    async def run_once(self) -> list[CycleReport]:
        """
        Run one cycle per kind concurrently and return the reports.

        Every cycle runs to completion. A kind whose cycle raised gets a
        report with ``error`` set instead of failing the others.
        """
        results = await asyncio.gather(
            *(cycle.run() for cycle in self._cycles),
            return_exceptions=True,
        )

        reports: list[CycleReport] = []
        for cycle, result in zip(self._cycles, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                kind = cycle.kind.value
                self._metrics.record_cycle_failure(kind)
                logger.error(
                    "Poll cycle failed",
                    kind=kind,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                reports.append(CycleReport(kind=kind, error=str(result)))
            else:
                reports.append(result)
        return reports

    async def _wait_for_stop(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds. True if stop() fired meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_kind(self, cycle: PollCycle) -> None:
        kind = cycle.kind.value
        bind_context(kind=kind)
        self._failures[kind] = 0

        while not self._stop_event.is_set():
            try:
                await self._timer_loop(cycle)
            except Exception as e:
                self._metrics.record_cycle_failure(kind)
                delay = restart_delay(
                    self._failures[kind], self._backoff_base, self._backoff_max
                )
                self._failures[kind] += 1
                logger.exception(
                    "Poll loop failed, restarting",
                    error=str(e),
                    attempt=self._failures[kind],
                    restart_in=round(delay, 2),
                )
                if await self._wait_for_stop(delay):
                    break

        logger.info("Poll loop exited")

    async def _timer_loop(self, cycle: PollCycle) -> None:
        loop = asyncio.get_running_loop()
        interval = cycle.interval_seconds
        next_tick = loop.time()

        while not self._stop_event.is_set():
            delay = next_tick - loop.time()
            if delay > 0 and await self._wait_for_stop(delay):
                return

            await cycle.run()
            self._failures[cycle.kind.value] = 0
            next_tick = next_tick_after(next_tick, interval, loop.time())
