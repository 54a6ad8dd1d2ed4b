"""
Background polling loop.

This module:
- runs one orchestrator tick every `polling_frequency` seconds
- bounds every tick with `tick_timeout` so a hung request cannot stall
  future ticks
- logs recoverable failures and keeps the previous metric values
- re-raises fatal failures (rejected credentials, untrusted certificate)
  so the process can exit
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from livebox_exporter.errors import ErrorKind, PollError
from livebox_exporter.orchestrator import PollOrchestrator

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        orchestrator: PollOrchestrator,
        polling_frequency: float,
        tick_timeout: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.polling_frequency = polling_frequency
        self.tick_timeout = tick_timeout
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._stopped = asyncio.Event()

    @property
    def healthy(self) -> bool:
        return self.last_success_at is not None and self.last_error is None

    async def run_once(self) -> None:
        """
        Run a single tick.

        Raises PollError on failure; a tick exceeding `tick_timeout` fails
        with kind TIMEOUT.
        """
        try:
            await asyncio.wait_for(self.orchestrator.poll(), timeout=self.tick_timeout)
        except asyncio.TimeoutError as exc:
            error = PollError("tick", exc, kind=ErrorKind.TIMEOUT)
            self.last_error = f"tick timed out after {self.tick_timeout}s"
            raise error from exc
        except PollError as exc:
            self.last_error = str(exc)
            raise

        self.last_success_at = datetime.now(timezone.utc)
        self.last_error = None

    async def run(self) -> None:
        """
        Poll until `stop()` is called.

        Raises the PollError of the first fatal failure.
        """
        logger.info("Polling every %s seconds", self.polling_frequency)

        while not self._stopped.is_set():
            try:
                await self.run_once()
            except PollError as exc:
                if exc.fatal:
                    logger.critical("Polling failed with a fatal error: %s", exc)
                    raise
                logger.warning("Polling failed: %s", exc)

            await self._sleep()

        logger.info("Polling stopped")

    def stop(self) -> None:
        self._stopped.set()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.polling_frequency)
        except asyncio.TimeoutError:
            pass
