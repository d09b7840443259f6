"""QueryStateStore - the one owner of the builder state.

state changes go through a closed set of named actions. reduce() takes the
previous AnalysisState and an action and returns the next one, never editing
a snapshot in place. compilers and the execution coordinator only read.

out-of-range indexes in an action are bugs in the caller. strict stores
(development) raise InvariantViolationError, lenient ones log a warning and
hand back the state unchanged.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from typing import Any, Literal

from queryforge.compiler.filters import add_member_filter
from queryforge.compiler.modes import clamp_flow_depth
from queryforge.compiler.multi_query import (
    build_all_queries,
    build_multi_query_config,
    get_merge_keys,
    is_multi_query_mode,
)
from queryforge.compiler.query_builder import build, generate_id, generate_metric_label
from queryforge.config import get_settings
from queryforge.errors import InvariantViolationError
from queryforge.models.modes import (
    RETENTION_MAX_PERIODS,
    FlowStartingStep,
    FlowState,
    FunnelState,
    FunnelStepState,
    RetentionState,
)
from queryforge.models.query import (
    CompiledQuery,
    Filter,
    MergeStrategy,
    MultiQueryConfig,
    SimpleFilter,
)
from queryforge.models.state import (
    AnalysisState,
    AnalysisType,
    BreakdownItem,
    MetricItem,
    QueryState,
)

logger = logging.getLogger(__name__)

DEFAULT_BREAKDOWN_GRANULARITY = "month"
COMPARISON_DATE_RANGE = "last 3 months"


# --- actions ---
# plain frozen dataclasses, one per thing a user can do


@dataclass(frozen=True)
class SetAnalysisType:
    analysis_type: AnalysisType


@dataclass(frozen=True)
class SetChartType:
    chart_type: str
    analysis_type: AnalysisType | None = None  # defaults to the current one


@dataclass(frozen=True)
class SetChartConfig:
    chart_config: dict[str, Any] | None


@dataclass(frozen=True)
class SetMergeStrategy:
    merge_strategy: MergeStrategy


@dataclass(frozen=True)
class SetActiveQuery:
    index: int


@dataclass(frozen=True)
class AddQuery:
    pass


@dataclass(frozen=True)
class RemoveQuery:
    index: int


@dataclass(frozen=True)
class AddMetric:
    field: str
    label: str | None = None


@dataclass(frozen=True)
class RemoveMetric:
    id: str


@dataclass(frozen=True)
class ToggleMetric:
    field: str


@dataclass(frozen=True)
class ReorderMetrics:
    from_index: int
    to_index: int


@dataclass(frozen=True)
class AddBreakdown:
    field: str
    is_time_dimension: bool = False
    granularity: str | None = None


@dataclass(frozen=True)
class RemoveBreakdown:
    id: str


@dataclass(frozen=True)
class ToggleBreakdown:
    field: str
    is_time_dimension: bool = False
    granularity: str | None = None


@dataclass(frozen=True)
class SetBreakdownGranularity:
    id: str
    granularity: str


@dataclass(frozen=True)
class ToggleBreakdownComparison:
    id: str


@dataclass(frozen=True)
class ReorderBreakdowns:
    from_index: int
    to_index: int


@dataclass(frozen=True)
class SetFilters:
    filters: list[Filter]


@dataclass(frozen=True)
class DropFieldToFilter:
    field: str


@dataclass(frozen=True)
class SetOrder:
    field: str
    direction: Literal["asc", "desc"] | None


@dataclass(frozen=True)
class OverrideActiveQuery:
    """Replace the compiled active query (drill-down), None to go back."""

    query: CompiledQuery | None


@dataclass(frozen=True)
class ResetState:
    pass


@dataclass(frozen=True)
class SetFunnelCube:
    cube: str | None


@dataclass(frozen=True)
class AddFunnelStep:
    name: str = ""
    cube: str | None = None


@dataclass(frozen=True)
class RemoveFunnelStep:
    index: int


@dataclass(frozen=True)
class UpdateFunnelStep:
    index: int
    changes: dict[str, Any] = dataclass_field(default_factory=dict)


@dataclass(frozen=True)
class ReorderFunnelSteps:
    from_index: int
    to_index: int


@dataclass(frozen=True)
class UpdateFunnel:
    """Set binding_key and/or time_dimension."""

    changes: dict[str, Any] = dataclass_field(default_factory=dict)


@dataclass(frozen=True)
class SetFlowCube:
    cube: str | None


@dataclass(frozen=True)
class SetStartingStep:
    name: str | None = None
    filters: list[Filter] | None = None


@dataclass(frozen=True)
class SetFlowSteps:
    steps_before: int | None = None
    steps_after: int | None = None


@dataclass(frozen=True)
class UpdateFlow:
    """Set binding_key, time_dimension, event_dimension or join_strategy."""

    changes: dict[str, Any] = dataclass_field(default_factory=dict)


@dataclass(frozen=True)
class SetRetentionCube:
    cube: str | None


@dataclass(frozen=True)
class SetRetentionPeriods:
    periods: int


@dataclass(frozen=True)
class UpdateRetention:
    """Set any other retention field (date_range, granularity, filters...)."""

    changes: dict[str, Any] = dataclass_field(default_factory=dict)


Action = (
    SetAnalysisType
    | SetChartType
    | SetChartConfig
    | SetMergeStrategy
    | SetActiveQuery
    | AddQuery
    | RemoveQuery
    | AddMetric
    | RemoveMetric
    | ToggleMetric
    | ReorderMetrics
    | AddBreakdown
    | RemoveBreakdown
    | ToggleBreakdown
    | SetBreakdownGranularity
    | ToggleBreakdownComparison
    | ReorderBreakdowns
    | SetFilters
    | DropFieldToFilter
    | SetOrder
    | OverrideActiveQuery
    | ResetState
    | SetFunnelCube
    | AddFunnelStep
    | RemoveFunnelStep
    | UpdateFunnelStep
    | ReorderFunnelSteps
    | UpdateFunnel
    | SetFlowCube
    | SetStartingStep
    | SetFlowSteps
    | UpdateFlow
    | SetRetentionCube
    | SetRetentionPeriods
    | UpdateRetention
)

Reducer = Callable[[AnalysisState, Any], AnalysisState]
_REDUCERS: dict[type, Reducer] = {}


def _reducer(action_type: type) -> Callable[[Reducer], Reducer]:
    def register(fn: Reducer) -> Reducer:
        _REDUCERS[action_type] = fn
        return fn

    return register


class _Violation(Exception):
    """Internal signal, turned into a raise or a warning by reduce()."""


def reduce(state: AnalysisState, action: Action, strict: bool = True) -> AnalysisState:
    """Apply one action and return the next state.

    Raises:
        InvariantViolationError: in strict mode, for out-of-range indexes.
        TypeError: for anything that isn't a known action.
    """
    reducer = _REDUCERS.get(type(action))
    if reducer is None:
        raise TypeError(f"Unknown action: {type(action).__name__}")
    try:
        return reducer(state, action)
    except _Violation as e:
        if strict:
            raise InvariantViolationError(str(e)) from None
        logger.warning("Ignoring %s: %s", type(action).__name__, e)
        return state


# --- helpers ---


def _check_index(index: int, length: int, what: str) -> None:
    if not 0 <= index < length:
        raise _Violation(f"{what} index {index} out of range (have {length})")


def _move(items: list, from_index: int, to_index: int, what: str) -> list:
    _check_index(from_index, len(items), what)
    _check_index(to_index, len(items), what)
    moved = list(items)
    moved.insert(to_index, moved.pop(from_index))
    return moved


def _replace_query(state: AnalysisState, index: int, query: QueryState) -> AnalysisState:
    states = list(state.query_states)
    states[index] = query
    # any edit makes a drill override stale
    return state.model_copy(update={"query_states": states, "query_override": None})


def _edit_active(state: AnalysisState, **changes: Any) -> AnalysisState:
    active = state.active_query
    return _replace_query(state, state.active_query_index, active.model_copy(update=changes))


def _order_without(order: dict[str, str] | None, field_name: str | None) -> dict[str, str] | None:
    if not order or field_name not in order:
        return order
    remaining = {k: v for k, v in order.items() if k != field_name}
    return remaining or None


def _source_index(state: AnalysisState) -> int:
    # under merge the first query owns the shared breakdowns
    if state.merge_strategy == MergeStrategy.MERGE and state.active_query_index > 0:
        return 0
    return state.active_query_index


def _new_breakdown(field_name: str, is_time: bool, granularity: str | None) -> BreakdownItem:
    return BreakdownItem(
        id=generate_id(),
        field=field_name,
        is_time_dimension=is_time,
        granularity=(granularity or DEFAULT_BREAKDOWN_GRANULARITY) if is_time else None,
    )


# --- core / multi-query ---


@_reducer(SetAnalysisType)
def _set_analysis_type(state: AnalysisState, action: SetAnalysisType) -> AnalysisState:
    return state.model_copy(update={"analysis_type": AnalysisType(action.analysis_type)})


@_reducer(SetChartType)
def _set_chart_type(state: AnalysisState, action: SetChartType) -> AnalysisState:
    analysis_type = AnalysisType(action.analysis_type or state.analysis_type)
    chart_types = {**state.chart_types, analysis_type.value: action.chart_type}
    return state.model_copy(update={"chart_types": chart_types})


@_reducer(SetChartConfig)
def _set_chart_config(state: AnalysisState, action: SetChartConfig) -> AnalysisState:
    return state.model_copy(update={"chart_config": action.chart_config})


@_reducer(SetMergeStrategy)
def _set_merge_strategy(state: AnalysisState, action: SetMergeStrategy) -> AnalysisState:
    return state.model_copy(update={"merge_strategy": MergeStrategy(action.merge_strategy)})


@_reducer(SetActiveQuery)
def _set_active_query(state: AnalysisState, action: SetActiveQuery) -> AnalysisState:
    _check_index(action.index, len(state.query_states), "Query")
    return state.model_copy(update={"active_query_index": action.index, "query_override": None})


@_reducer(AddQuery)
def _add_query(state: AnalysisState, action: AddQuery) -> AnalysisState:
    # new tab starts as a copy of the active one, minus sort order
    current = state.active_query
    copy = QueryState(
        metrics=list(current.metrics),
        breakdowns=list(current.breakdowns),
        filters=list(current.filters),
    )
    return state.model_copy(
        update={
            "query_states": [*state.query_states, copy],
            "active_query_index": len(state.query_states),
            "query_override": None,
        }
    )


@_reducer(RemoveQuery)
def _remove_query(state: AnalysisState, action: RemoveQuery) -> AnalysisState:
    _check_index(action.index, len(state.query_states), "Query")
    if len(state.query_states) <= 1:
        return state  # always keep one

    states = [s for i, s in enumerate(state.query_states) if i != action.index]
    active = state.active_query_index
    if action.index == active:
        active = max(0, active - 1)
    elif action.index < active:
        active -= 1
    return state.model_copy(
        update={"query_states": states, "active_query_index": active, "query_override": None}
    )


@_reducer(OverrideActiveQuery)
def _override_active_query(state: AnalysisState, action: OverrideActiveQuery) -> AnalysisState:
    return state.model_copy(update={"query_override": action.query})


@_reducer(ResetState)
def _reset_state(state: AnalysisState, action: ResetState) -> AnalysisState:
    return AnalysisState()


# --- metrics ---


@_reducer(AddMetric)
def _add_metric(state: AnalysisState, action: AddMetric) -> AnalysisState:
    metrics = state.active_query.metrics
    label = action.label or generate_metric_label(len(metrics))
    new_metric = MetricItem(id=generate_id(), field=action.field, label=label)
    return _edit_active(state, metrics=[*metrics, new_metric])


@_reducer(RemoveMetric)
def _remove_metric(state: AnalysisState, action: RemoveMetric) -> AnalysisState:
    active = state.active_query
    removed = next((m.field for m in active.metrics if m.id == action.id), None)
    return _edit_active(
        state,
        metrics=[m for m in active.metrics if m.id != action.id],
        order=_order_without(active.order, removed),
    )


@_reducer(ToggleMetric)
def _toggle_metric(state: AnalysisState, action: ToggleMetric) -> AnalysisState:
    metrics = state.active_query.metrics
    if any(m.field == action.field for m in metrics):
        existing = next(m for m in metrics if m.field == action.field)
        return _remove_metric(state, RemoveMetric(id=existing.id))
    return _add_metric(state, AddMetric(field=action.field))


@_reducer(ReorderMetrics)
def _reorder_metrics(state: AnalysisState, action: ReorderMetrics) -> AnalysisState:
    metrics = _move(state.active_query.metrics, action.from_index, action.to_index, "Metric")
    return _edit_active(state, metrics=metrics)


# --- breakdowns ---


@_reducer(AddBreakdown)
def _add_breakdown(state: AnalysisState, action: AddBreakdown) -> AnalysisState:
    active = state.active_query
    if action.is_time_dimension and active.time_breakdown is not None:
        return state  # one time dimension per query
    breakdown = _new_breakdown(action.field, action.is_time_dimension, action.granularity)
    return _edit_active(state, breakdowns=[*active.breakdowns, breakdown])


@_reducer(RemoveBreakdown)
def _remove_breakdown(state: AnalysisState, action: RemoveBreakdown) -> AnalysisState:
    active = state.active_query
    removed = next((b.field for b in active.breakdowns if b.id == action.id), None)
    return _edit_active(
        state,
        breakdowns=[b for b in active.breakdowns if b.id != action.id],
        order=_order_without(active.order, removed),
    )


@_reducer(ToggleBreakdown)
def _toggle_breakdown(state: AnalysisState, action: ToggleBreakdown) -> AnalysisState:
    existing = next((b for b in state.active_query.breakdowns if b.field == action.field), None)
    if existing is not None:
        return _remove_breakdown(state, RemoveBreakdown(id=existing.id))
    return _add_breakdown(
        state, AddBreakdown(action.field, action.is_time_dimension, action.granularity)
    )


@_reducer(SetBreakdownGranularity)
def _set_breakdown_granularity(
    state: AnalysisState, action: SetBreakdownGranularity
) -> AnalysisState:
    index = _source_index(state)
    target = state.query_states[index]
    breakdowns = [
        b.model_copy(update={"granularity": action.granularity})
        if b.id == action.id and b.is_time_dimension
        else b
        for b in target.breakdowns
    ]
    return _replace_query(state, index, target.model_copy(update={"breakdowns": breakdowns}))


@_reducer(ToggleBreakdownComparison)
def _toggle_breakdown_comparison(
    state: AnalysisState, action: ToggleBreakdownComparison
) -> AnalysisState:
    """Flip period-over-period comparison on a time breakdown.

    only one time breakdown can compare at once. turning it on also makes
    sure there's a date range to compare against and switches the chart to
    a line chart.
    """
    index = _source_index(state)
    target = state.query_states[index]
    toggled = next((b for b in target.breakdowns if b.id == action.id), None)
    if toggled is None or not toggled.is_time_dimension:
        return state

    enabling = not toggled.enable_comparison
    breakdowns = []
    for b in target.breakdowns:
        if b.id == action.id:
            b = b.model_copy(update={"enable_comparison": enabling})
        elif b.is_time_dimension and b.enable_comparison:
            b = b.model_copy(update={"enable_comparison": False})
        breakdowns.append(b)

    filters = list(target.filters)
    if enabling:
        has_date_filter = any(
            isinstance(f, SimpleFilter)
            and f.member == toggled.field
            and f.operator == "inDateRange"
            for f in filters
        )
        if not has_date_filter:
            filters.append(
                SimpleFilter(
                    member=toggled.field,
                    operator="inDateRange",
                    values=[],
                    date_range=COMPARISON_DATE_RANGE,
                )
            )

    new_state = _replace_query(
        state, index, target.model_copy(update={"breakdowns": breakdowns, "filters": filters})
    )
    if enabling and new_state.chart_type != "line":
        chart_types = {**new_state.chart_types, new_state.analysis_type.value: "line"}
        new_state = new_state.model_copy(update={"chart_types": chart_types})
    return new_state


@_reducer(ReorderBreakdowns)
def _reorder_breakdowns(state: AnalysisState, action: ReorderBreakdowns) -> AnalysisState:
    breakdowns = _move(
        state.active_query.breakdowns, action.from_index, action.to_index, "Breakdown"
    )
    return _edit_active(state, breakdowns=breakdowns)


# --- filters / order ---


@_reducer(SetFilters)
def _set_filters(state: AnalysisState, action: SetFilters) -> AnalysisState:
    return _edit_active(state, filters=list(action.filters))


@_reducer(DropFieldToFilter)
def _drop_field_to_filter(state: AnalysisState, action: DropFieldToFilter) -> AnalysisState:
    filters = add_member_filter(list(state.active_query.filters), action.field)
    return _edit_active(state, filters=filters)


@_reducer(SetOrder)
def _set_order(state: AnalysisState, action: SetOrder) -> AnalysisState:
    order = dict(state.active_query.order or {})
    if action.direction is None:
        order.pop(action.field, None)
    else:
        order[action.field] = action.direction
    return _edit_active(state, order=order or None)


# --- funnel ---


def _edit_funnel(state: AnalysisState, **changes: Any) -> AnalysisState:
    return state.model_copy(update={"funnel": state.funnel.model_copy(update=changes)})


@_reducer(SetFunnelCube)
def _set_funnel_cube(state: AnalysisState, action: SetFunnelCube) -> AnalysisState:
    # binding key and time dimension belonged to the old cube
    steps = [s.model_copy(update={"cube": action.cube}) for s in state.funnel.steps]
    return _edit_funnel(
        state, cube=action.cube, binding_key=None, time_dimension=None, steps=steps
    )


@_reducer(AddFunnelStep)
def _add_funnel_step(state: AnalysisState, action: AddFunnelStep) -> AnalysisState:
    steps = state.funnel.steps
    step = FunnelStepState(
        id=generate_id(),
        name=action.name or f"Step {len(steps) + 1}",
        cube=action.cube or state.funnel.cube,
    )
    return _edit_funnel(state, steps=[*steps, step])


@_reducer(RemoveFunnelStep)
def _remove_funnel_step(state: AnalysisState, action: RemoveFunnelStep) -> AnalysisState:
    _check_index(action.index, len(state.funnel.steps), "Funnel step")
    steps = [s for i, s in enumerate(state.funnel.steps) if i != action.index]
    return _edit_funnel(state, steps=steps)


@_reducer(UpdateFunnelStep)
def _update_funnel_step(state: AnalysisState, action: UpdateFunnelStep) -> AnalysisState:
    _check_index(action.index, len(state.funnel.steps), "Funnel step")
    steps = list(state.funnel.steps)
    current = steps[action.index]
    # validate so raw filter dicts become models
    steps[action.index] = FunnelStepState.model_validate(
        {**current.model_dump(), **action.changes, "id": current.id}
    )
    return _edit_funnel(state, steps=steps)


@_reducer(ReorderFunnelSteps)
def _reorder_funnel_steps(state: AnalysisState, action: ReorderFunnelSteps) -> AnalysisState:
    steps = _move(state.funnel.steps, action.from_index, action.to_index, "Funnel step")
    return _edit_funnel(state, steps=steps)


@_reducer(UpdateFunnel)
def _update_funnel(state: AnalysisState, action: UpdateFunnel) -> AnalysisState:
    funnel = FunnelState.model_validate({**state.funnel.model_dump(), **action.changes})
    return state.model_copy(update={"funnel": funnel})


# --- flow ---


@_reducer(SetFlowCube)
def _set_flow_cube(state: AnalysisState, action: SetFlowCube) -> AnalysisState:
    flow = state.flow.model_copy(
        update={
            "cube": action.cube,
            "binding_key": None,
            "time_dimension": None,
            "event_dimension": None,
        }
    )
    return state.model_copy(update={"flow": flow})


@_reducer(SetStartingStep)
def _set_starting_step(state: AnalysisState, action: SetStartingStep) -> AnalysisState:
    current = state.flow.starting_step
    starting_step = FlowStartingStep.model_validate(
        {
            "name": current.name if action.name is None else action.name,
            "filters": current.filters if action.filters is None else action.filters,
        }
    )
    return state.model_copy(
        update={"flow": state.flow.model_copy(update={"starting_step": starting_step})}
    )


@_reducer(SetFlowSteps)
def _set_flow_steps(state: AnalysisState, action: SetFlowSteps) -> AnalysisState:
    changes = {}
    if action.steps_before is not None:
        changes["steps_before"] = clamp_flow_depth(action.steps_before)
    if action.steps_after is not None:
        changes["steps_after"] = clamp_flow_depth(action.steps_after)
    return state.model_copy(update={"flow": state.flow.model_copy(update=changes)})


@_reducer(UpdateFlow)
def _update_flow(state: AnalysisState, action: UpdateFlow) -> AnalysisState:
    flow = FlowState.model_validate({**state.flow.model_dump(), **action.changes})
    return state.model_copy(update={"flow": flow})


# --- retention ---


@_reducer(SetRetentionCube)
def _set_retention_cube(state: AnalysisState, action: SetRetentionCube) -> AnalysisState:
    retention = state.retention.model_copy(
        update={
            "cube": action.cube,
            "binding_key": None,
            "time_dimension": None,
            "breakdown_dimensions": [],
        }
    )
    return state.model_copy(update={"retention": retention})


@_reducer(SetRetentionPeriods)
def _set_retention_periods(state: AnalysisState, action: SetRetentionPeriods) -> AnalysisState:
    periods = max(1, min(RETENTION_MAX_PERIODS, action.periods))
    return state.model_copy(
        update={"retention": state.retention.model_copy(update={"periods": periods})}
    )


@_reducer(UpdateRetention)
def _update_retention(state: AnalysisState, action: UpdateRetention) -> AnalysisState:
    retention = RetentionState.model_validate(
        {**state.retention.model_dump(), **action.changes}
    )
    return state.model_copy(update={"retention": retention})


class QueryStateStore:
    """Holds the current AnalysisState and applies actions to it.

    subscribers get (new_state, action) after every dispatch that actually
    changed something - the execution coordinator hooks in here to schedule
    a debounced run.
    """

    def __init__(self, state: AnalysisState | None = None, strict: bool | None = None) -> None:
        self._state = state or AnalysisState()
        if strict is None:
            strict = bool(get_settings().strict_invariants)
        self.strict = strict
        self._listeners: list[Callable[[AnalysisState, Action], None]] = []

    @property
    def state(self) -> AnalysisState:
        return self._state

    def dispatch(self, action: Action) -> AnalysisState:
        previous = self._state
        self._state = reduce(previous, action, strict=self.strict)
        if self._state is not previous:
            logger.debug("Applied %s", type(action).__name__)
            for listener in list(self._listeners):
                listener(self._state, action)
        return self._state

    def subscribe(self, listener: Callable[[AnalysisState, Action], None]) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- read side, all delegating to the pure compilers ---

    def build_active_query(self) -> CompiledQuery:
        """The query the active tab would run (drill override included)."""
        if self._state.query_override is not None:
            return self._state.query_override
        return build(self._state.active_query)

    def build_all_queries(self) -> list[CompiledQuery]:
        return build_all_queries(self._state.query_states, self._state.merge_strategy)

    def merge_keys(self) -> list[str] | None:
        return get_merge_keys(self._state.query_states, self._state.merge_strategy)

    def is_multi_query_mode(self) -> bool:
        return is_multi_query_mode(self._state.query_states)

    def multi_query_config(self) -> MultiQueryConfig | None:
        return build_multi_query_config(self._state.query_states, self._state.merge_strategy)
