"""Fetch errors raised by the ccusage invoker."""

from .models import FetchErrorKind, FetchFailure


class FetchError(Exception):
    """Base class for a failed ccusage invocation."""

    kind: FetchErrorKind
    exit_code: int | None = None

    def to_failure(self) -> FetchFailure:
        return FetchFailure(kind=self.kind, message=str(self), exit_code=self.exit_code)


class ToolUnavailable(FetchError):
    """ccusage could not be located or launched."""

    kind = FetchErrorKind.TOOL_UNAVAILABLE


class ExecutionFailed(FetchError):
    kind = FetchErrorKind.EXECUTION_FAILED

    def __init__(self, exit_code: int, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no error output"
        super().__init__(f"ccusage exited with status {exit_code}: {detail}")


class FetchTimeout(FetchError):
    kind = FetchErrorKind.TIMEOUT


class MalformedOutput(FetchError):
    kind = FetchErrorKind.MALFORMED_OUTPUT
