"""ccusage process invoker: one short-lived child process per window fetch."""

import asyncio
import json
import logging
import os
import shlex
import signal
from datetime import date, datetime, timedelta
from decimal import Decimal

from pydantic import ValidationError

from .config import CCUSAGE_COMMAND
from .errors import ExecutionFailed, FetchTimeout, MalformedOutput, ToolUnavailable
from .models import BlocksReport, BlockUsage, DailyReport, RawRecord, TimeWindow

logger = logging.getLogger("ccwatch")

# Shell exit statuses for "not executable" and "command not found"
NOT_FOUND_EXIT_CODES = frozenset([126, 127])

BLOCK_SESSION_HOURS = {
    TimeWindow.LAST_HOUR: "1",
    TimeWindow.LAST_FIVE_HOURS: "5",
}


def window_arguments(window: TimeWindow, now: datetime) -> list[str]:
    """ccusage arguments for a window. Only the weekly range depends on `now`."""
    if window in BLOCK_SESSION_HOURS:
        return [
            "blocks", "--json", "--breakdown", "--recent",
            "--session-length", BLOCK_SESSION_HOURS[window],
        ]
    if window is TimeWindow.TODAY:
        return ["daily", "--json", "--breakdown"]
    since = (now - timedelta(days=7)).strftime("%Y%m%d")
    return ["daily", "--json", "--breakdown", "--since", since]


def load_json(stdout: bytes):
    # Decimal keeps dollar amounts exact when they are summed later
    try:
        return json.loads(stdout, parse_float=Decimal)
    except ValueError as e:
        raise MalformedOutput(f"ccusage output is not valid JSON: {e}") from e


def parse_daily(payload, window: TimeWindow, today: date) -> list[RawRecord]:
    """Per-model records from a `ccusage daily` report.

    TODAY keeps only the entry dated `today`; the weekly window keeps every
    day, in source order, for the orchestrator to merge.
    """
    if isinstance(payload, list):
        payload = {"daily": payload}
    try:
        report = DailyReport.model_validate(payload)
    except ValidationError as e:
        raise MalformedOutput(f"unexpected daily report shape: {e.error_count()} error(s)") from e

    days = report.daily
    if window is TimeWindow.TODAY:
        days = [d for d in days if d.date == today.isoformat()]
    return [record for day in days for record in day.model_breakdowns]


def parse_blocks(payload) -> list[RawRecord]:
    """Per-model records for the active `ccusage blocks` session, if any."""
    if isinstance(payload, list):
        payload = {"blocks": payload}
    try:
        report = BlocksReport.model_validate(payload)
    except ValidationError as e:
        raise MalformedOutput(f"unexpected blocks report shape: {e.error_count()} error(s)") from e

    active = next((b for b in report.blocks if b.is_active and not b.is_gap), None)
    if active is None:
        return []
    if active.model_breakdowns:
        return list(active.model_breakdowns)
    return estimate_block_breakdowns(active)


def estimate_block_breakdowns(block: BlockUsage) -> list[RawRecord]:
    """Split a block's total cost evenly across its models when ccusage gives no breakdown."""
    models = [m for m in block.models if m]
    if not models:
        return []
    share = block.cost_usd / len(models)
    return [
        RawRecord(model_name=m, input_tokens=0, output_tokens=0, cost=share)
        for m in models
    ]


async def _terminate(proc: asyncio.subprocess.Process):
    # The child leads its own process group, so this also reaches anything it
    # spawned (npx runs ccusage as a grandchild that holds our pipes open)
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        elif proc.returncode is None:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass
    await proc.wait()


class CcusageInvoker:
    """Runs ccusage for a single window and returns its raw records."""

    def __init__(self, command: list[str] | None = None, clock=None):
        self.command = list(CCUSAGE_COMMAND if command is None else command)
        self._clock = clock or (lambda: datetime.now().astimezone())

    def build_command(self, window: TimeWindow, now: datetime | None = None) -> list[str]:
        return self.command + window_arguments(window, now or self._clock())

    async def fetch(self, window: TimeWindow, timeout: float) -> list[RawRecord]:
        if not self.command:
            raise ToolUnavailable("no ccusage command configured")
        now = self._clock()
        argv = self.build_command(window, now)
        stdout, stderr, returncode = await self._run(argv, timeout)

        if returncode in NOT_FOUND_EXIT_CODES:
            raise ToolUnavailable(f"{argv[0]} could not run ccusage (exit status {returncode})")
        if returncode != 0:
            raise ExecutionFailed(returncode, stderr.decode("utf-8", errors="replace"))

        payload = load_json(stdout)
        if window in BLOCK_SESSION_HOURS:
            return parse_blocks(payload)
        return parse_daily(payload, window, now.date())

    async def _run(self, argv: list[str], timeout: float) -> tuple[bytes, bytes, int]:
        logger.debug("Running %s", shlex.join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ToolUnavailable(f"cannot launch {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except TimeoutError:
            await _terminate(proc)
            raise FetchTimeout(f"ccusage did not finish within {timeout:g}s") from None
        except asyncio.CancelledError:
            # Shutdown: never leave an orphaned ccusage behind
            await _terminate(proc)
            raise
        return stdout, stderr, proc.returncode
