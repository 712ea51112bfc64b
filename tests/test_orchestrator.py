"""Tests for the refresh orchestrator."""

import asyncio
from decimal import Decimal

import pytest

from ccwatch.cache import PeriodCache
from ccwatch.errors import ExecutionFailed, FetchTimeout, MalformedOutput, ToolUnavailable
from ccwatch.invoker import CcusageInvoker
from ccwatch.models import FetchErrorKind, Origin, TimeWindow, Trigger
from ccwatch.normalizer import normalize
from ccwatch.orchestrator import RefreshOrchestrator, merge_by_display_name

from fakes import FakeFetcher, raw


def _orchestrator(fetcher):
    return RefreshOrchestrator(PeriodCache(), fetcher, timeout=5)


@pytest.mark.asyncio
async def test_refresh_all_windows_live():
    fetcher = FakeFetcher({w: [raw(cost="1.25")] for w in TimeWindow})
    orch = _orchestrator(fetcher)
    outcome = await orch.refresh(Trigger.MANUAL)

    assert sorted(fetcher.calls) == sorted(TimeWindow)
    assert outcome.ok
    assert outcome.trigger is Trigger.MANUAL
    assert outcome.finished_at is not None
    assert set(outcome.origins.values()) == {Origin.LIVE}
    for window in TimeWindow:
        snap = orch.cache.read(window)
        assert snap.origin is Origin.LIVE
        assert snap.breakdowns[0].display_name == "Opus 4"
        assert snap.fetched_at is not None


@pytest.mark.asyncio
async def test_empty_result_is_confirmed_zero_usage():
    orch = _orchestrator(FakeFetcher({TimeWindow.TODAY: []}))
    outcome = await orch.refresh()
    snap = orch.cache.read(TimeWindow.TODAY)
    assert snap.origin is Origin.EMPTY
    assert snap.breakdowns == ()
    assert snap.error is None
    assert snap.fetched_at is not None
    assert outcome.origins[TimeWindow.TODAY] is Origin.EMPTY


@pytest.mark.asyncio
async def test_missing_tool_is_not_empty():
    missing = ToolUnavailable("cannot launch npx")
    orch = _orchestrator(FakeFetcher({w: missing for w in TimeWindow}))
    outcome = await orch.refresh()

    snap = orch.cache.read(TimeWindow.TODAY)
    assert snap.origin is Origin.UNKNOWN
    assert snap.origin is not Origin.EMPTY
    assert snap.error.kind is FetchErrorKind.TOOL_UNAVAILABLE
    assert outcome.tool_unavailable
    assert orch.tool_unavailable


@pytest.mark.asyncio
async def test_tool_missing_on_some_windows_only():
    results = {w: ToolUnavailable("gone") for w in TimeWindow}
    results[TimeWindow.TODAY] = [raw()]
    orch = _orchestrator(FakeFetcher(results))
    outcome = await orch.refresh()
    assert not outcome.tool_unavailable
    assert outcome.failures[TimeWindow.LAST_HOUR].kind is FetchErrorKind.TOOL_UNAVAILABLE


@pytest.mark.asyncio
async def test_tool_unavailable_clears_once_installed():
    fetcher = FakeFetcher({w: ToolUnavailable("gone") for w in TimeWindow})
    orch = _orchestrator(fetcher)
    assert (await orch.refresh()).tool_unavailable

    fetcher.results = {w: [raw()] for w in TimeWindow}
    assert not (await orch.refresh()).tool_unavailable
    assert not orch.tool_unavailable
    assert orch.cache.read(TimeWindow.TODAY).origin is Origin.LIVE


@pytest.mark.asyncio
async def test_failure_without_prior_data_carries_classification():
    fetcher = FakeFetcher({
        TimeWindow.LAST_HOUR: FetchTimeout("too slow"),
        TimeWindow.LAST_FIVE_HOURS: ExecutionFailed(1, "ccusage: boom"),
        TimeWindow.TODAY: MalformedOutput("garbage"),
    })
    orch = _orchestrator(fetcher)
    outcome = await orch.refresh()

    assert orch.cache.read(TimeWindow.LAST_HOUR).error.kind is FetchErrorKind.TIMEOUT
    five = orch.cache.read(TimeWindow.LAST_FIVE_HOURS)
    assert five.error.kind is FetchErrorKind.EXECUTION_FAILED
    assert five.error.exit_code == 1
    assert orch.cache.read(TimeWindow.TODAY).error.kind is FetchErrorKind.MALFORMED_OUTPUT
    assert all(orch.cache.read(w).origin is Origin.UNKNOWN for w in outcome.failures)
    assert orch.cache.read(TimeWindow.LAST_SEVEN_DAYS).origin is Origin.EMPTY


@pytest.mark.asyncio
async def test_partial_failure_isolation():
    fetcher = FakeFetcher({w: [raw(cost="1.00")] for w in TimeWindow})
    orch = _orchestrator(fetcher)
    await orch.refresh()
    before = orch.cache.read(TimeWindow.LAST_HOUR)

    fetcher.results[TimeWindow.LAST_HOUR] = FetchTimeout("too slow")
    fetcher.results[TimeWindow.TODAY] = [raw(cost="5.00")]
    outcome = await orch.refresh()

    hour = orch.cache.read(TimeWindow.LAST_HOUR)
    assert hour.origin is Origin.CACHED_STALE
    assert hour.breakdowns == before.breakdowns
    assert hour.fetched_at == before.fetched_at
    assert hour.error.kind is FetchErrorKind.TIMEOUT
    assert outcome.origins[TimeWindow.LAST_HOUR] is Origin.CACHED_STALE

    today = orch.cache.read(TimeWindow.TODAY)
    assert today.origin is Origin.LIVE
    assert today.total_cost == Decimal("5.00")


@pytest.mark.asyncio
async def test_stale_entry_recovers_on_success():
    fetcher = FakeFetcher({TimeWindow.TODAY: [raw(cost="1.00")]})
    orch = _orchestrator(fetcher)
    await orch.refresh()
    fetcher.results[TimeWindow.TODAY] = FetchTimeout("slow")
    await orch.refresh()
    fetcher.results[TimeWindow.TODAY] = [raw(cost="2.00")]
    await orch.refresh()

    snap = orch.cache.read(TimeWindow.TODAY)
    assert snap.origin is Origin.LIVE
    assert snap.error is None
    assert snap.total_cost == Decimal("2.00")


@pytest.mark.asyncio
async def test_weekly_aggregation_by_display_name():
    costs = ["1.00", "2.00", "0", "0.50", "0", "0", "3.25"]
    daily = [raw("claude-sonnet-4-20250514", cost=c, inp=10, out=20, cw=1, cr=2) for c in costs]
    orch = _orchestrator(FakeFetcher({TimeWindow.LAST_SEVEN_DAYS: daily}))
    await orch.refresh()

    snap = orch.cache.read(TimeWindow.LAST_SEVEN_DAYS)
    assert len(snap.breakdowns) == 1
    merged = snap.breakdowns[0]
    assert merged.display_name == "Sonnet 4"
    assert merged.cost == Decimal("6.75")
    assert merged.input_tokens == 70
    assert merged.output_tokens == 140
    assert merged.cache_creation_tokens == 7
    assert merged.cache_read_tokens == 14


@pytest.mark.asyncio
async def test_weekly_aggregation_merges_family_identifiers():
    daily = [
        raw("claude-opus-4-1-20250805", cost="1.00"),
        raw("claude-3-haiku-20240307", cost="0.10"),
        raw("claude-opus-4-5-20251101", cost="2.00"),
    ]
    orch = _orchestrator(FakeFetcher({TimeWindow.LAST_SEVEN_DAYS: daily}))
    await orch.refresh()

    snap = orch.cache.read(TimeWindow.LAST_SEVEN_DAYS)
    assert [b.display_name for b in snap.breakdowns] == ["Opus", "Haiku"]
    assert snap.breakdowns[0].cost == Decimal("3.00")
    assert snap.breakdowns[0].model_id == "Opus"


@pytest.mark.asyncio
async def test_other_windows_are_not_aggregated():
    records = [raw("claude-opus-4-1-20250805"), raw("claude-opus-4-5-20251101")]
    orch = _orchestrator(FakeFetcher({TimeWindow.TODAY: records}))
    await orch.refresh()
    assert len(orch.cache.read(TimeWindow.TODAY).breakdowns) == 2


def test_merge_keeps_source_order_and_id():
    merged = merge_by_display_name([
        normalize(raw("claude-3-haiku-20240307", cost="0.5")),
        normalize(raw("claude-opus-4-20250514", cost="1")),
        normalize(raw("claude-3-haiku-20240307", cost="0.25")),
    ])
    assert [b.display_name for b in merged] == ["Haiku", "Opus 4"]
    assert merged[0].model_id == "claude-3-haiku-20240307"
    assert merged[0].cost == Decimal("0.75")


@pytest.mark.asyncio
async def test_manual_refresh_joins_scheduled_cycle():
    gate = asyncio.Event()
    fetcher = FakeFetcher({w: [raw()] for w in TimeWindow}, gate=gate)
    orch = _orchestrator(fetcher)

    scheduled = asyncio.create_task(orch.refresh(Trigger.SCHEDULED))
    await asyncio.sleep(0.05)
    assert orch.refreshing
    manual = asyncio.create_task(orch.refresh(Trigger.MANUAL))
    await asyncio.sleep(0.05)
    gate.set()
    first, second = await asyncio.gather(scheduled, manual)

    assert len(fetcher.calls) == len(TimeWindow)
    assert first is second
    assert first.trigger is Trigger.SCHEDULED
    assert not orch.refreshing

    await orch.refresh(Trigger.MANUAL)
    assert len(fetcher.calls) == 2 * len(TimeWindow)


@pytest.mark.asyncio
async def test_sequence_numbers_increase_across_cycles():
    fetcher = FakeFetcher({TimeWindow.TODAY: [raw(cost="1.00")]})
    orch = _orchestrator(fetcher)
    await orch.refresh()
    fetcher.results[TimeWindow.TODAY] = [raw(cost="2.00")]
    await orch.refresh()
    # A late write tagged with a first-cycle sequence number is discarded
    assert not orch.cache.write(TimeWindow.TODAY, orch.build_snapshot(TimeWindow.TODAY, [raw(cost="9")]), 1)
    assert orch.cache.read(TimeWindow.TODAY).total_cost == Decimal("2.00")


@pytest.mark.asyncio
async def test_run_periodic_refreshes_on_schedule():
    fetcher = FakeFetcher({w: [raw()] for w in TimeWindow})
    orch = _orchestrator(fetcher)
    task = asyncio.create_task(orch.run_periodic(interval=0.01))
    await asyncio.sleep(0.2)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert len(fetcher.calls) >= 2 * len(TimeWindow)
    assert orch.last_outcome.trigger is Trigger.SCHEDULED


@pytest.mark.asyncio
async def test_run_periodic_survives_unexpected_errors():
    class Exploding(FakeFetcher):
        async def fetch(self, window, timeout):
            self.calls.append(window)
            raise RuntimeError("bug")

    fetcher = Exploding()
    orch = _orchestrator(fetcher)
    task = asyncio.create_task(orch.run_periodic(interval=0.01))
    await asyncio.sleep(0.1)
    assert not task.done()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    assert len(fetcher.calls) > len(TimeWindow)


@pytest.mark.asyncio
async def test_aclose_cancels_inflight_fetches():
    gate = asyncio.Event()
    fetcher = FakeFetcher(gate=gate)
    orch = _orchestrator(fetcher)
    caller = asyncio.create_task(orch.refresh())
    await asyncio.sleep(0.05)

    await orch.aclose()
    with pytest.raises(asyncio.CancelledError):
        await caller
    assert fetcher.cancelled == len(TimeWindow)
    assert not orch.refreshing


@pytest.mark.asyncio
async def test_unrunnable_tool_is_reported_not_raised(tmp_path):
    tool = tmp_path / "ccusage"
    tool.write_bytes(b"\x00\x01\x02 not a program \xff")
    tool.chmod(0o755)
    orch = _orchestrator(CcusageInvoker(command=[str(tool)]))

    outcome = await orch.refresh()
    assert outcome.tool_unavailable
    assert set(outcome.origins.values()) == {Origin.UNKNOWN}
    assert all(f.kind is FetchErrorKind.TOOL_UNAVAILABLE for f in outcome.failures.values())


@pytest.mark.asyncio
async def test_unexpected_fetcher_error_stays_in_its_window():
    gate = asyncio.Event()

    class Flaky(FakeFetcher):
        async def fetch(self, window, timeout):
            if window is TimeWindow.TODAY:
                raise IndexError("list index out of range")
            await gate.wait()
            return await super().fetch(window, timeout)

    fetcher = Flaky({w: [raw()] for w in TimeWindow})
    orch = _orchestrator(fetcher)
    caller = asyncio.create_task(orch.refresh())
    await asyncio.sleep(0.05)
    # The failing window must not end the cycle while siblings still run
    assert orch.refreshing
    assert not caller.done()
    gate.set()

    outcome = await caller
    assert not orch.refreshing
    failure = outcome.failures[TimeWindow.TODAY]
    assert failure.kind is FetchErrorKind.EXECUTION_FAILED
    assert "IndexError" in failure.message
    assert outcome.origins[TimeWindow.TODAY] is Origin.UNKNOWN
    assert not outcome.tool_unavailable
    for window in (TimeWindow.LAST_HOUR, TimeWindow.LAST_FIVE_HOURS, TimeWindow.LAST_SEVEN_DAYS):
        assert outcome.origins[window] is Origin.LIVE
        assert orch.cache.read(window).origin is Origin.LIVE
