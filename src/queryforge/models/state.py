"""Builder state models.

all of these are frozen - the store never edits a snapshot in place, every
action hands back a new AnalysisState built with model_copy(update=...).
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from queryforge.models.modes import FlowState, FunnelState, RetentionState
from queryforge.models.query import CompiledQuery, Filter, MergeStrategy


class AnalysisType(str, Enum):
    """Which compiler owns the current analysis."""

    QUERY = "query"
    FUNNEL = "funnel"
    FLOW = "flow"
    RETENTION = "retention"


DEFAULT_CHART_TYPES: dict[str, str] = {
    AnalysisType.QUERY.value: "bar",
    AnalysisType.FUNNEL.value: "funnel",
    AnalysisType.FLOW.value: "sankey",
    AnalysisType.RETENTION.value: "retentionHeatmap",
}


class MetricItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    field: str  # semantic member, e.g. Orders.count
    label: str  # A, B, C... unless the user picked one


class BreakdownItem(BaseModel):
    """A grouping dimension, time based or not.

    granularity only makes sense for time dimensions, so it's dropped for the
    rest and defaulted for time ones.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    field: str
    is_time_dimension: bool = False
    granularity: str | None = None
    enable_comparison: bool = False

    @model_validator(mode="after")
    def check_granularity(self) -> "BreakdownItem":
        if not self.is_time_dimension and (self.granularity or self.enable_comparison):
            raise ValueError(
                f"Breakdown '{self.field}' is not a time dimension, "
                "granularity and comparison don't apply"
            )
        return self


class QueryState(BaseModel):
    """One query tab worth of metrics, breakdowns, filters and sort order."""

    model_config = ConfigDict(frozen=True)

    metrics: list[MetricItem] = Field(default_factory=list)
    breakdowns: list[BreakdownItem] = Field(default_factory=list)
    filters: list[Filter] = Field(default_factory=list)
    order: dict[str, Literal["asc", "desc"]] | None = None

    @model_validator(mode="after")
    def single_time_breakdown(self) -> "QueryState":
        time_breakdowns = [b for b in self.breakdowns if b.is_time_dimension]
        if len(time_breakdowns) > 1:
            raise ValueError("A query can only have one time dimension breakdown")
        return self

    def has_content(self) -> bool:
        return bool(self.metrics or self.breakdowns)

    @property
    def time_breakdown(self) -> BreakdownItem | None:
        for breakdown in self.breakdowns:
            if breakdown.is_time_dimension:
                return breakdown
        return None


class AnalysisState(BaseModel):
    """The whole builder snapshot held by QueryStateStore.

    query_override is set when a drill rewrites the active query - the
    execution coordinator prefers it over rebuilding from query_states until
    the drill path is unwound or the user edits the query again.
    """

    model_config = ConfigDict(frozen=True)

    analysis_type: AnalysisType = AnalysisType.QUERY
    query_states: list[QueryState] = Field(default_factory=lambda: [QueryState()])
    active_query_index: int = 0
    merge_strategy: MergeStrategy = MergeStrategy.CONCAT
    chart_types: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_CHART_TYPES))
    chart_config: dict[str, Any] | None = None

    funnel: FunnelState = Field(default_factory=FunnelState)
    flow: FlowState = Field(default_factory=FlowState)
    retention: RetentionState = Field(default_factory=RetentionState)

    query_override: CompiledQuery | None = None

    @model_validator(mode="after")
    def check_active_index(self) -> "AnalysisState":
        if not self.query_states:
            raise ValueError("At least one query state is required")
        if not 0 <= self.active_query_index < len(self.query_states):
            raise ValueError(
                f"Active query index {self.active_query_index} out of range "
                f"for {len(self.query_states)} queries"
            )
        return self

    @property
    def active_query(self) -> QueryState:
        return self.query_states[self.active_query_index]

    @property
    def chart_type(self) -> str:
        return self.chart_types.get(self.analysis_type.value, "bar")
