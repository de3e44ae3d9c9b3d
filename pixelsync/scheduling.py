"""
Background periodic tasks with an explicit start/stop lifecycle.
"""
import asyncio
import structlog
from typing import Awaitable, Callable, Optional


logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class PeriodicTask:
    """
    Runs an async callback every `interval` seconds until stopped.

    A failing run is logged and the loop keeps going; the interval is the
    implicit retry delay. The sleep function is injectable so tests can
    drive time deterministically.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        sleep: Sleep = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.debug("periodic_task_started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("periodic_task_stopped", task=self.name)

    async def run_once(self) -> None:
        """Run the callback once, swallowing and logging its failure."""
        try:
            await self._callback()
        except Exception as e:
            logger.warning("periodic_task_run_failed", task=self.name, error=str(e))

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            await self.run_once()
