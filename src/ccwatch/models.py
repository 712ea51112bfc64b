"""Pydantic models for CCWatch usage data."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, model_validator


def _utcnow():
    return datetime.now(UTC)


class TimeWindow(str, Enum):
    """Reporting ranges, each backed by its own ccusage invocation."""

    LAST_HOUR = "1hr"
    LAST_FIVE_HOURS = "5hrs"
    TODAY = "today"
    LAST_SEVEN_DAYS = "week"

    @property
    def label(self) -> str:
        return _WINDOW_LABELS[self]


_WINDOW_LABELS = {
    TimeWindow.LAST_HOUR: "1 Hr",
    TimeWindow.LAST_FIVE_HOURS: "5 Hrs",
    TimeWindow.TODAY: "Today",
    TimeWindow.LAST_SEVEN_DAYS: "Week",
}


class Origin(str, Enum):
    """Provenance of a window snapshot."""

    LIVE = "live"
    CACHED_STALE = "cached_stale"
    EMPTY = "empty"  # confirmed zero usage
    UNKNOWN = "unknown"  # never fetched, or failed with nothing cached


class Trigger(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class FetchErrorKind(str, Enum):
    TOOL_UNAVAILABLE = "tool_unavailable"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    MALFORMED_OUTPUT = "malformed_output"


class FetchFailure(BaseModel):
    """A fetch error carried as data on a snapshot."""

    model_config = ConfigDict(frozen=True)

    kind: FetchErrorKind
    message: str = ""
    exit_code: int | None = None


# --- ccusage output shapes ---


class RawRecord(BaseModel):
    """One per-model usage record as emitted by ccusage."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, protected_namespaces=())

    model_name: str = Field(alias="modelName")
    input_tokens: NonNegativeInt = Field(alias="inputTokens")
    output_tokens: NonNegativeInt = Field(alias="outputTokens")
    cache_creation_tokens: NonNegativeInt = Field(0, alias="cacheCreationTokens")
    cache_read_tokens: NonNegativeInt = Field(0, alias="cacheReadTokens")
    cost: Decimal = Field(ge=0)


class DailyUsage(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    date: str
    model_breakdowns: list[RawRecord] = Field(default_factory=list, alias="modelBreakdowns")


class DailyReport(BaseModel):
    daily: list[DailyUsage]


class BlockUsage(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str = ""
    is_active: bool = Field(False, alias="isActive")
    is_gap: bool = Field(False, alias="isGap")
    cost_usd: Decimal = Field(Decimal(0), ge=0, alias="costUSD")
    models: list[str] = Field(default_factory=list)
    model_breakdowns: list[RawRecord] = Field(default_factory=list, alias="modelBreakdowns")


class BlocksReport(BaseModel):
    blocks: list[BlockUsage]


# --- normalized data ---


class ModelBreakdown(BaseModel):
    """Usage for one model within a window."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    display_name: str
    input_tokens: NonNegativeInt = 0
    output_tokens: NonNegativeInt = 0
    cache_creation_tokens: NonNegativeInt = 0
    cache_read_tokens: NonNegativeInt = 0
    cost: Decimal = Field(Decimal(0), ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens


class WindowSnapshot(BaseModel):
    """Latest known usage for one window plus its provenance."""

    model_config = ConfigDict(frozen=True)

    window: TimeWindow
    breakdowns: tuple[ModelBreakdown, ...] = ()
    fetched_at: datetime | None = None
    origin: Origin = Origin.UNKNOWN
    error: FetchFailure | None = None

    @model_validator(mode="after")
    def check_empty_has_no_breakdowns(self):
        if self.origin is Origin.EMPTY and self.breakdowns:
            raise ValueError("an EMPTY snapshot cannot carry breakdowns")
        return self

    @classmethod
    def never_fetched(cls, window: TimeWindow) -> "WindowSnapshot":
        return cls(window=window)

    @property
    def total_cost(self) -> Decimal:
        return sum((b.cost for b in self.breakdowns), Decimal(0))

    @property
    def total_tokens(self) -> int:
        return sum(b.total_tokens for b in self.breakdowns)


class RefreshOutcome(BaseModel):
    """Result of one refresh cycle across every window."""

    trigger: Trigger
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    origins: dict[TimeWindow, Origin] = Field(default_factory=dict)
    failures: dict[TimeWindow, FetchFailure] = Field(default_factory=dict)
    tool_unavailable: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures
