"""Fixed-interval background tasks.

Runs callbacks such as the pool health check and the learning engine's
periodic update on their own timers, decoupled from request handling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run *callback* every *interval* seconds until stopped.

    A failing cycle is logged and counted; the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[Any]],
        *,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self.runs = 0
        self.failures = 0
        self.last_run: float | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("Started periodic task %s every %ss", self.name, self.interval)

    async def stop(self) -> None:
        self._stopped.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped periodic task %s", self.name)

    async def tick(self) -> bool:
        """Run one cycle now.  Returns False when the cycle failed."""
        started = time.monotonic()
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            self.last_error = str(exc)
            logger.exception("Periodic task %s failed", self.name)
            return False
        finally:
            self.runs += 1
            self.last_run = time.time()
        logger.debug(
            "Periodic task %s completed",
            self.name,
            extra={"duration_ms": round((time.monotonic() - started) * 1000, 2)},
        )
        return True

    async def _loop(self) -> None:
        if self._run_immediately:
            await self.tick()
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.tick()

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "running": self.running,
            "runs": self.runs,
            "failures": self.failures,
            "last_run": self.last_run,
            "last_error": self.last_error,
        }
