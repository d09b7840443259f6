"""YAML analysis files.

an analysis file describes what a user would otherwise click together:
query tabs with metrics/breakdowns/filters, or one of the funnel, flow and
retention modes. the loader doesn't build AnalysisState by hand - it replays
the file as store actions so metric labels, the one-time-breakdown rule and
the rest of the store's invariants apply exactly like they do interactively.

    analysis_type: query
    merge_strategy: merge
    queries:
      - metrics: [Orders.count]
        breakdowns:
          - field: Orders.createdAt
            time: true
            granularity: month
      - metrics: [Orders.totalAmount]
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from queryforge.compiler.filters import parse_filters
from queryforge.errors import AnalysisFileError, QueryForgeError
from queryforge.models.query import MergeStrategy
from queryforge.models.state import AnalysisState, AnalysisType, QueryState
from queryforge.store import (
    Action,
    AddBreakdown,
    AddFunnelStep,
    AddMetric,
    QueryStateStore,
    SetAnalysisType,
    SetChartConfig,
    SetChartType,
    SetFilters,
    SetFlowCube,
    SetFlowSteps,
    SetFunnelCube,
    SetMergeStrategy,
    SetOrder,
    SetRetentionCube,
    SetRetentionPeriods,
    SetStartingStep,
    ToggleBreakdownComparison,
    UpdateFlow,
    UpdateFunnel,
    UpdateFunnelStep,
    UpdateRetention,
)


def load_analysis(path: str | Path) -> AnalysisState:
    """Read an analysis YAML file into an AnalysisState."""
    path = Path(path)
    if not path.exists():
        raise AnalysisFileError(f"Analysis file not found: {path}")

    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise AnalysisFileError(f"Invalid YAML in {path}: {e}") from e

    return analysis_from_dict(data or {}, source=str(path))


def analysis_from_dict(data: Any, source: str = "<analysis>") -> AnalysisState:
    """Same as load_analysis for an already parsed document."""
    if not isinstance(data, dict):
        raise AnalysisFileError(f"{source}: expected a mapping at the top level")

    try:
        query_states = [_build_query_state(q) for q in _as_list(data.get("queries"), "queries")]
        store = QueryStateStore(
            AnalysisState(query_states=query_states or [QueryState()]), strict=True
        )
        comparison = any(b.enable_comparison for q in query_states for b in q.breakdowns)
        for action in _analysis_actions(data, comparison):
            store.dispatch(action)
    except AnalysisFileError:
        raise
    except (ValidationError, ValueError, TypeError, KeyError, AttributeError, QueryForgeError) as e:
        raise AnalysisFileError(f"Invalid analysis in {source}: {e}") from e

    return store.state


def _as_list(value: Any, what: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise AnalysisFileError(f"'{what}' must be a list")
    return value


def _build_query_state(data: dict[str, Any]) -> QueryState:
    """Replay one query tab on a scratch store and take its QueryState."""
    if not isinstance(data, dict):
        raise AnalysisFileError("each entry in 'queries' must be a mapping")

    store = QueryStateStore(strict=True)

    for metric in _as_list(data.get("metrics"), "metrics"):
        # either just the member name or {field, label}
        if isinstance(metric, str):
            store.dispatch(AddMetric(metric))
        else:
            store.dispatch(AddMetric(metric["field"], metric.get("label")))

    for breakdown in _as_list(data.get("breakdowns"), "breakdowns"):
        if isinstance(breakdown, str):
            store.dispatch(AddBreakdown(breakdown))
            continue
        is_time = bool(breakdown.get("time", breakdown.get("is_time_dimension", False)))
        store.dispatch(AddBreakdown(breakdown["field"], is_time, breakdown.get("granularity")))
        if breakdown.get("comparison"):
            added = store.state.active_query.breakdowns[-1]
            store.dispatch(ToggleBreakdownComparison(added.id))

    filters = _as_list(data.get("filters"), "filters")
    if filters:
        # comparison may already have added a date filter, keep it
        existing = list(store.state.active_query.filters)
        store.dispatch(SetFilters(existing + parse_filters(filters)))

    for field, direction in (data.get("order") or {}).items():
        store.dispatch(SetOrder(field, direction))

    return store.state.active_query


def _binding_key(value: Any) -> dict[str, Any] | None:
    # yaml gives the dimension (or the per-cube list) directly
    return None if value is None else {"dimension": value}


def _analysis_actions(data: dict[str, Any], comparison: bool = False) -> Iterator[Action]:
    if "merge_strategy" in data:
        yield SetMergeStrategy(MergeStrategy(data["merge_strategy"]))

    if data.get("funnel"):
        yield from _funnel_actions(data["funnel"])
    if data.get("flow"):
        yield from _flow_actions(data["flow"])
    if data.get("retention"):
        yield from _retention_actions(data["retention"])

    analysis_type = AnalysisType(data.get("analysis_type", AnalysisType.QUERY.value))
    yield SetAnalysisType(analysis_type)

    # query tabs were built on scratch stores, so redo the switch to a line
    # chart that turning comparison on does
    if comparison:
        yield SetChartType("line", AnalysisType.QUERY)
    if data.get("chart_type"):
        yield SetChartType(data["chart_type"], analysis_type)
    if "chart_config" in data:
        yield SetChartConfig(data["chart_config"])


def _funnel_actions(funnel: dict[str, Any]) -> Iterator[Action]:
    if "cube" in funnel:
        yield SetFunnelCube(funnel["cube"])
    yield UpdateFunnel(
        {
            "binding_key": _binding_key(funnel.get("binding_key")),
            "time_dimension": funnel.get("time_dimension"),
        }
    )
    for index, step in enumerate(_as_list(funnel.get("steps"), "funnel.steps")):
        yield AddFunnelStep(step.get("name", ""), step.get("cube"))
        changes: dict[str, Any] = {}
        if step.get("filters"):
            changes["filters"] = parse_filters(step["filters"])
        if step.get("time_to_convert"):
            changes["time_to_convert"] = step["time_to_convert"]
        if changes:
            yield UpdateFunnelStep(index, changes)


def _flow_actions(flow: dict[str, Any]) -> Iterator[Action]:
    if "cube" in flow:
        yield SetFlowCube(flow["cube"])
    keys = ("time_dimension", "event_dimension", "join_strategy")
    changes = {key: flow[key] for key in keys if key in flow}
    if "binding_key" in flow:
        changes["binding_key"] = _binding_key(flow["binding_key"])
    yield UpdateFlow(changes)

    starting = flow.get("starting_step") or {}
    yield SetStartingStep(
        name=starting.get("name"),
        filters=parse_filters(starting["filters"]) if starting.get("filters") else None,
    )
    yield SetFlowSteps(flow.get("steps_before"), flow.get("steps_after"))


def _retention_actions(retention: dict[str, Any]) -> Iterator[Action]:
    if "cube" in retention:
        yield SetRetentionCube(retention["cube"])

    changes: dict[str, Any] = {}
    for key in ("time_dimension", "granularity", "retention_type", "breakdown_dimensions"):
        if key in retention:
            changes[key] = retention[key]
    if retention.get("date_range"):
        # yaml turns bare 2024-01-01 into a date object
        changes["date_range"] = {k: str(v) for k, v in retention["date_range"].items()}
    if "binding_key" in retention:
        changes["binding_key"] = _binding_key(retention["binding_key"])
    for key in ("cohort_filters", "activity_filters"):
        if key in retention:
            changes[key] = parse_filters(retention[key])
    yield UpdateRetention(changes)

    if "periods" in retention:
        yield SetRetentionPeriods(int(retention["periods"]))
