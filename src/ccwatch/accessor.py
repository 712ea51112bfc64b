"""Read-only seam between the presentation layer and the refresh engine."""

import asyncio
from datetime import timedelta

from .cache import Listener, PeriodCache
from .config import STALE_AFTER
from .models import RefreshOutcome, TimeWindow, Trigger, WindowSnapshot
from .orchestrator import RefreshOrchestrator


class SnapshotAccessor:
    """What a UI may call. Reads never block; refreshes run on the engine's loop."""

    def __init__(
        self,
        cache: PeriodCache,
        orchestrator: RefreshOrchestrator,
        loop: asyncio.AbstractEventLoop | None = None,
        stale_after: float = STALE_AFTER,
    ):
        self._cache = cache
        self._orchestrator = orchestrator
        self._loop = loop
        self.stale_after = timedelta(seconds=stale_after)

    def attach(self, loop: asyncio.AbstractEventLoop | None):
        self._loop = loop

    def current(self, window: TimeWindow) -> WindowSnapshot:
        return self._cache.read(window)

    def snapshots(self) -> dict[TimeWindow, WindowSnapshot]:
        return self._cache.snapshots()

    def is_stale(self, window: TimeWindow) -> bool:
        return self._cache.is_stale(window, self.stale_after)

    @property
    def tool_unavailable(self) -> bool:
        return self._orchestrator.tool_unavailable

    def subscribe(self, listener: Listener):
        return self._cache.subscribe(listener)

    def trigger_manual_refresh(self, timeout: float | None = None) -> RefreshOutcome:
        """Run (or join) a refresh cycle and wait for it, from a non-async thread.

        Without an attached loop the cycle runs on the calling thread. This call
        blocks, so it refuses to run on a thread with a running event loop;
        async callers use `refresh()` instead.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise RuntimeError("trigger_manual_refresh() would block the running event loop; await refresh() instead")
        if self._loop is None:
            return asyncio.run(self._orchestrator.refresh(Trigger.MANUAL))
        future = asyncio.run_coroutine_threadsafe(self._orchestrator.refresh(Trigger.MANUAL), self._loop)
        return future.result(timeout)

    async def refresh(self) -> RefreshOutcome:
        """Awaitable manual refresh, usable from any event loop."""
        if self._loop is None or self._loop is asyncio.get_running_loop():
            return await self._orchestrator.refresh(Trigger.MANUAL)
        future = asyncio.run_coroutine_threadsafe(self._orchestrator.refresh(Trigger.MANUAL), self._loop)
        return await asyncio.wrap_future(future)
