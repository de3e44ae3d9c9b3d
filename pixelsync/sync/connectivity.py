"""
Network reachability tracking.
"""
import asyncio
import structlog
from typing import Optional

import httpx

from pixelsync.events import ConnectivityChanged, EventBus
from pixelsync.scheduling import PeriodicTask, Sleep


logger = structlog.get_logger()


class ConnectivityMonitor:
    """
    Online/offline flag corrected by an active liveness probe.

    The initial value comes from the platform's network signal and is not
    trusted on its own: a HEAD request to a known-reachable resource runs on
    a fixed interval. Only transitions publish ConnectivityChanged.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        bus: EventBus,
        probe_url: str,
        interval: float = 10,
        initial: bool = True,
        origin: Optional[str] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.http = http
        self.bus = bus
        self.probe_url = probe_url
        self.origin = origin
        self._is_online = initial
        self._task = PeriodicTask("connectivity_probe", interval, self.check, sleep=sleep)

    @property
    def is_online(self) -> bool:
        return self._is_online

    async def probe(self) -> bool:
        """Any HTTP response counts as reachable; transport errors do not."""
        try:
            await self.http.head(self.probe_url, headers={"Cache-Control": "no-cache"})
            return True
        except httpx.HTTPError:
            return False

    async def check(self) -> bool:
        await self.set_online(await self.probe())
        return self._is_online

    async def set_online(self, is_online: bool) -> None:
        """Record a network-state signal; publishes only on a transition."""
        if is_online == self._is_online:
            return
        self._is_online = is_online
        logger.info("connectivity_changed", is_online=is_online)
        await self.bus.publish(ConnectivityChanged(is_online=is_online, origin=self.origin))

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
