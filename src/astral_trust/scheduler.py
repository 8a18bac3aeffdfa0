"""Astral Core Trust - cancellable periodic background tasks."""
from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable
import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """Runs an async job every ``interval_seconds`` until stopped.

    A failing run is logged and the loop keeps going; only cancellation ends it.
    """

    def __init__(self, name: str, job: Callable[[], Awaitable[Any]],
                 interval_seconds: float) -> None:
        self._name = name
        self._job = job
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._runs = 0
        self._failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> dict[str, Any]:
        return {"name": self._name, "runs": self._runs, "failures": self._failures,
                "running": self.running}

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self._name)
        logger.info("periodic_task_started", task=self._name, interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("periodic_task_stopped", task=self._name, runs=self._runs)

    async def run_once(self) -> Any:
        self._runs += 1
        try:
            return await self._job()
        except Exception:
            self._failures += 1
            raise

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("periodic_task_error", task=self._name, error=str(e))
