"""Background runtime: the refresh engine on its own event-loop thread."""

import asyncio
import logging
import threading

from .accessor import SnapshotAccessor
from .cache import PeriodCache
from .config import FETCH_TIMEOUT, REFRESH_INTERVAL, STALE_AFTER
from .orchestrator import Fetcher, RefreshOrchestrator

logger = logging.getLogger("ccwatch")


class UsageService:
    """Wires cache, orchestrator and accessor, and runs the periodic refresh.

    The event loop lives in a daemon thread so that ccusage invocations never
    block the thread a UI draws on.
    """

    def __init__(
        self,
        fetcher: Fetcher | None = None,
        interval: float = REFRESH_INTERVAL,
        timeout: float = FETCH_TIMEOUT,
        stale_after: float = STALE_AFTER,
    ):
        self.interval = interval
        self.cache = PeriodCache()
        self.orchestrator = RefreshOrchestrator(self.cache, fetcher, timeout=timeout)
        self.accessor = SnapshotAccessor(self.cache, self.orchestrator, stale_after=stale_after)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._periodic: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._loop = asyncio.new_event_loop()
        ready = threading.Event()

        def run_loop():
            asyncio.set_event_loop(self._loop)
            self._loop.call_soon(ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(target=run_loop, name="ccwatch-refresh", daemon=True)
        self._thread.start()
        ready.wait()
        asyncio.run_coroutine_threadsafe(self._start_periodic(), self._loop).result()
        self.accessor.attach(self._loop)
        logger.info("CCWatch service started")

    def stop(self, timeout: float = 10.0):
        if not self.running:
            return
        self.accessor.attach(None)
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop).result(timeout)
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout)
            self._loop.close()
            self._loop = None
            self._thread = None
        logger.info("CCWatch service stopped")

    async def _start_periodic(self):
        self._periodic = asyncio.create_task(self.orchestrator.run_periodic(self.interval))

    async def _shutdown(self):
        if self._periodic is not None:
            self._periodic.cancel()
            await asyncio.gather(self._periodic, return_exceptions=True)
            self._periodic = None
        await self.orchestrator.aclose()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
