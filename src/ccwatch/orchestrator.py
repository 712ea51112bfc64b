"""Refresh orchestration: concurrent per-window fetches merged into the cache."""

import asyncio
import itertools
import logging
from datetime import UTC, datetime
from typing import Protocol

from .cache import PeriodCache
from .config import CCUSAGE_INSTALL_URL, FETCH_TIMEOUT, REFRESH_INTERVAL
from .errors import FetchError
from .invoker import CcusageInvoker
from .models import (
    FetchErrorKind,
    FetchFailure,
    ModelBreakdown,
    Origin,
    RawRecord,
    RefreshOutcome,
    TimeWindow,
    Trigger,
    WindowSnapshot,
)
from .normalizer import normalize

logger = logging.getLogger("ccwatch")


class Fetcher(Protocol):
    async def fetch(self, window: TimeWindow, timeout: float) -> list[RawRecord]: ...


def merge_by_display_name(breakdowns: list[ModelBreakdown]) -> list[ModelBreakdown]:
    """Sum breakdowns sharing a display name, keeping first-seen order."""
    merged: dict[str, ModelBreakdown] = {}
    for b in breakdowns:
        prev = merged.get(b.display_name)
        if prev is None:
            merged[b.display_name] = b
            continue
        merged[b.display_name] = prev.model_copy(
            update={
                "model_id": prev.model_id if prev.model_id == b.model_id else b.display_name,
                "input_tokens": prev.input_tokens + b.input_tokens,
                "output_tokens": prev.output_tokens + b.output_tokens,
                "cache_creation_tokens": prev.cache_creation_tokens + b.cache_creation_tokens,
                "cache_read_tokens": prev.cache_read_tokens + b.cache_read_tokens,
                "cost": prev.cost + b.cost,
            }
        )
    return list(merged.values())


class RefreshOrchestrator:
    """Fans out one fetch per window and writes the results to the cache.

    At most one cycle runs at a time: a refresh requested while a cycle is
    in flight awaits that cycle's outcome instead of starting another.
    """

    def __init__(
        self,
        cache: PeriodCache,
        fetcher: Fetcher | None = None,
        windows=None,
        timeout: float = FETCH_TIMEOUT,
        clock=None,
    ):
        self.cache = cache
        self.fetcher = fetcher or CcusageInvoker()
        self.windows = tuple(windows or TimeWindow)
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sequence = itertools.count(1)
        self._inflight: asyncio.Task | None = None
        self.last_outcome: RefreshOutcome | None = None

    @property
    def tool_unavailable(self) -> bool:
        return self.last_outcome is not None and self.last_outcome.tool_unavailable

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self, trigger: Trigger = Trigger.MANUAL) -> RefreshOutcome:
        if self.refreshing:
            logger.debug("%s refresh joined the cycle in flight", trigger.value)
        else:
            self._inflight = asyncio.create_task(self._cycle(trigger))
        # Shielded so one impatient caller cannot cancel the shared cycle
        return await asyncio.shield(self._inflight)

    async def run_periodic(self, interval: float = REFRESH_INTERVAL):
        """Refresh on a fixed period until cancelled."""
        logger.info("Refreshing every %gs", interval)
        while True:
            try:
                await self.refresh(Trigger.SCHEDULED)
            except Exception:
                logger.exception("Scheduled refresh failed")
            await asyncio.sleep(interval)

    async def aclose(self):
        """Cancel any cycle in flight, terminating its child processes."""
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def build_snapshot(self, window: TimeWindow, records: list[RawRecord]) -> WindowSnapshot:
        breakdowns = [normalize(r) for r in records]
        if window is TimeWindow.LAST_SEVEN_DAYS:
            breakdowns = merge_by_display_name(breakdowns)
        return WindowSnapshot(
            window=window,
            breakdowns=tuple(breakdowns),
            fetched_at=self._clock(),
            origin=Origin.LIVE if breakdowns else Origin.EMPTY,
        )

    async def _cycle(self, trigger: Trigger) -> RefreshOutcome:
        outcome = RefreshOutcome(trigger=trigger, started_at=self._clock())
        # Sequence numbers are taken at initiation, before any fetch starts
        tagged = [(window, next(self._sequence)) for window in self.windows]
        results = await asyncio.gather(*(self._refresh_window(w, seq) for w, seq in tagged))

        for (window, _), (origin, failure) in zip(tagged, results):
            outcome.origins[window] = origin
            if failure is not None:
                outcome.failures[window] = failure
        outcome.tool_unavailable = bool(self.windows) and all(
            w in outcome.failures and outcome.failures[w].kind is FetchErrorKind.TOOL_UNAVAILABLE
            for w in self.windows
        )
        outcome.finished_at = self._clock()
        self.last_outcome = outcome

        if outcome.tool_unavailable:
            logger.warning("ccusage is not available; install it from %s", CCUSAGE_INSTALL_URL)
        logger.info(
            "Refresh (%s) done: %d ok, %d failed",
            trigger.value,
            len(self.windows) - len(outcome.failures),
            len(outcome.failures),
        )
        return outcome

    async def _refresh_window(self, window: TimeWindow, sequence: int) -> tuple[Origin, FetchFailure | None]:
        try:
            records = await self.fetcher.fetch(window, self.timeout)
            snapshot = self.build_snapshot(window, records)
        except FetchError as e:
            failure = e.to_failure()
            logger.warning("Fetch for %s failed (%s): %s", window.value, failure.kind.value, e)
        except Exception as e:
            # A broken fetcher must not abort the cycle or leave siblings running
            logger.exception("Fetch for %s raised unexpectedly", window.value)
            failure = FetchFailure(kind=FetchErrorKind.EXECUTION_FAILED, message=f"{type(e).__name__}: {e}")
        else:
            self.cache.write(window, snapshot, sequence)
            return snapshot.origin, None

        if self.cache.has_data(window):
            # Keep serving the numbers we have
            self.cache.mark_stale(window, failure, sequence)
            return Origin.CACHED_STALE, failure
        self.cache.write(window, WindowSnapshot(window=window, error=failure), sequence)
        return Origin.UNKNOWN, failure
