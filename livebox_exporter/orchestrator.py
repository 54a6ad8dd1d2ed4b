"""
Concurrent poll orchestration.

A `Poller` fetches data from the Livebox and updates the Prometheus metrics
it owns. `PollOrchestrator` runs every registered poller concurrently on
each tick:

- all pollers start together, each as its own asyncio task
- the first failure cancels the pollers still running
- the tick waits for every poller to finish or be cancelled
- the first failure is raised as a `PollError` naming the poller

Metric updates made before a failure are kept.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from typing import Any, Awaitable, Iterable, List, Optional, Sequence

from prometheus_client.registry import Collector

from livebox_exporter.errors import PollError

logger = logging.getLogger(__name__)

# Pollers slower than this are reported in the logs.
SLOW_POLL_THRESHOLD = 10.0


class Poller(abc.ABC):
    """A unit of polling work run once per tick."""

    # Largest polling interval (seconds) this poller tolerates, if any.
    max_polling_interval: Optional[float] = None

    @property
    def name(self) -> str:
        return type(self).__name__

    @abc.abstractmethod
    async def poll(self) -> None:
        """Fetch fresh data and update metrics."""

    @abc.abstractmethod
    def collectors(self) -> List[Collector]:
        """Metrics owned by this poller, to register with the exporter registry."""


async def _cancel_and_wait(tasks: Sequence["asyncio.Future[Any]"]) -> None:
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def run_all(aws: Iterable[Awaitable[Any]]) -> None:
    """
    Run awaitables concurrently and wait for all of them.

    On the first failure the remaining ones are cancelled and awaited, then
    that failure is re-raised. If the caller is cancelled, every child is
    cancelled and awaited before the cancellation propagates.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return

    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        await _cancel_and_wait(tasks)
        raise

    failed = [t for t in tasks if t.done() and not t.cancelled() and t.exception() is not None]
    if failed:
        await _cancel_and_wait(tasks)
        raise failed[0].exception()


class PollOrchestrator:
    def __init__(self, pollers: Sequence[Poller], slow_poll_threshold: float = SLOW_POLL_THRESHOLD):
        self.pollers = list(pollers)
        self.slow_poll_threshold = slow_poll_threshold

    def collectors(self) -> List[Collector]:
        collectors: List[Collector] = []
        for poller in self.pollers:
            collectors.extend(poller.collectors())
        return collectors

    def effective_polling_frequency(self, configured: float) -> float:
        """Tighten `configured` to the smallest interval a poller requires."""
        frequency = configured
        for poller in self.pollers:
            limit = poller.max_polling_interval
            if limit is not None and frequency > limit:
                logger.warning(
                    "%s requires a lower polling frequency, setting polling frequency to %s seconds",
                    poller.name,
                    limit,
                )
                frequency = limit
        return frequency

    async def poll(self) -> None:
        """Run one tick. Raises PollError for the first poller that failed."""
        await run_all(self._run(poller) for poller in self.pollers)

    async def _run(self, poller: Poller) -> None:
        start = time.monotonic()
        try:
            await poller.poll()
        except Exception as exc:
            raise PollError(poller.name, exc) from exc
        finally:
            elapsed = time.monotonic() - start
            if elapsed > self.slow_poll_threshold:
                logger.warning("Poll was slow (%.1fs) for %s", elapsed, poller.name)
