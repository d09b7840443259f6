"""Models for the funnel, flow and retention analysis modes.

each mode has a *State (what the builder holds) and a *Query (what gets sent).
the query models dump to a single object wrapped under the mode name, e.g.
{"funnel": {...}} - the server runs the steps, not us.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from queryforge.models.query import Filter

FLOW_MIN_DEPTH = 0
FLOW_MAX_DEPTH = 5
RETENTION_MAX_PERIODS = 52

JoinStrategy = Literal["auto", "lateral", "window"]
RetentionGranularity = Literal["day", "week", "month"]
RetentionType = Literal["classic", "rolling"]


class BindingKeyMapping(BaseModel):
    """Per-cube binding key, for funnels that hop between cubes."""

    model_config = ConfigDict(frozen=True)

    cube: str
    dimension: str


class BindingKey(BaseModel):
    """The field that ties events from different steps to the same entity.

    either one dimension for everything ("Events.userId") or a list of
    per-cube mappings.
    """

    model_config = ConfigDict(frozen=True)

    dimension: str | list[BindingKeyMapping]


class FunnelStepState(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str = ""
    cube: str | None = None
    filters: list[Filter] = Field(default_factory=list)
    time_to_convert: str | None = Field(default=None, alias="timeToConvert")  # ISO 8601, e.g. P7D


class FunnelState(BaseModel):
    model_config = ConfigDict(frozen=True)

    cube: str | None = None
    binding_key: BindingKey | None = None
    time_dimension: str | None = None
    steps: list[FunnelStepState] = Field(default_factory=list)


class FlowStartingStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    filters: list[Filter] = Field(default_factory=list)


class FlowState(BaseModel):
    model_config = ConfigDict(frozen=True)

    cube: str | None = None
    binding_key: BindingKey | None = None
    time_dimension: str | None = None
    event_dimension: str | None = None
    starting_step: FlowStartingStep = Field(default_factory=FlowStartingStep)
    steps_before: int = Field(default=3, ge=FLOW_MIN_DEPTH, le=FLOW_MAX_DEPTH)
    steps_after: int = Field(default=3, ge=FLOW_MIN_DEPTH, le=FLOW_MAX_DEPTH)
    join_strategy: JoinStrategy = "auto"


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: str  # YYYY-MM-DD
    end: str


class RetentionState(BaseModel):
    """Cohort retention settings.

    date_range left as None means "use the default preset" - the compiler
    fills in the last three full months at compile time.
    """

    model_config = ConfigDict(frozen=True)

    cube: str | None = None
    binding_key: BindingKey | None = None
    time_dimension: str | None = None
    date_range: DateRange | None = None
    granularity: RetentionGranularity = "week"
    periods: int = 12
    retention_type: RetentionType = "classic"
    cohort_filters: list[Filter] = Field(default_factory=list)
    activity_filters: list[Filter] = Field(default_factory=list)
    breakdown_dimensions: list[str] = Field(default_factory=list)


# --- server query shapes ---


class _ModeQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    mode: str = ""  # overridden per subclass, never serialized

    def to_payload(self) -> dict[str, Any]:
        body = self.model_dump(by_alias=True, exclude_none=True, mode="json", exclude={"mode"})
        return {self.mode: body}


class FunnelQueryStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    cube: str
    filter: list[Filter] | None = None
    time_to_convert: str | None = Field(default=None, alias="timeToConvert")


class FunnelQuery(_ModeQuery):
    mode: str = "funnel"

    binding_key: str | list[BindingKeyMapping] = Field(alias="bindingKey")
    time_dimension: str = Field(alias="timeDimension")
    steps: list[FunnelQueryStep]
    include_time_metrics: bool = Field(default=True, alias="includeTimeMetrics")


class FlowQueryStartingStep(BaseModel):
    name: str
    filter: Filter | list[Filter] | None = None


class FlowQuery(_ModeQuery):
    mode: str = "flow"

    binding_key: str | list[BindingKeyMapping] = Field(alias="bindingKey")
    time_dimension: str = Field(alias="timeDimension")
    starting_step: FlowQueryStartingStep = Field(alias="startingStep")
    steps_before: int = Field(alias="stepsBefore")
    steps_after: int = Field(alias="stepsAfter")
    event_dimension: str = Field(alias="eventDimension")
    output_mode: Literal["sankey", "sunburst"] = Field(default="sankey", alias="outputMode")
    join_strategy: JoinStrategy = Field(default="auto", alias="joinStrategy")


class RetentionQuery(_ModeQuery):
    mode: str = "retention"

    time_dimension: str = Field(alias="timeDimension")
    binding_key: str | list[BindingKeyMapping] = Field(alias="bindingKey")
    date_range: DateRange = Field(alias="dateRange")
    granularity: RetentionGranularity = "week"
    periods: int = 12
    retention_type: RetentionType = Field(default="classic", alias="retentionType")
    cohort_filters: Filter | list[Filter] | None = Field(default=None, alias="cohortFilters")
    activity_filters: Filter | list[Filter] | None = Field(default=None, alias="activityFilters")
    breakdown_dimensions: list[str] | None = Field(default=None, alias="breakdownDimensions")


ModeQuery = FunnelQuery | FlowQuery | RetentionQuery
