"""Compilers for the funnel, flow and retention modes.

each mode compiles to ONE query object wrapped under its mode key - the
server works out the step sequencing. every compile_* validates first and
returns None when the state isn't ready yet, never a partial query.
"""

import re
from datetime import date, timedelta

from queryforge.models.meta import CubeMeta
from queryforge.models.modes import (
    FLOW_MAX_DEPTH,
    FLOW_MIN_DEPTH,
    RETENTION_MAX_PERIODS,
    BindingKey,
    DateRange,
    FlowQuery,
    FlowQueryStartingStep,
    FlowState,
    FunnelQuery,
    FunnelQueryStep,
    FunnelState,
    RetentionQuery,
    RetentionState,
)
from queryforge.models.query import ValidationResult

# P7D, PT1H, P1DT12H...
ISO_DURATION = re.compile(
    r"^P(?:\d+Y)?(?:\d+M)?(?:\d+W)?(?:\d+D)?(?:T(?:\d+H)?(?:\d+M)?(?:\d+S)?)?$"
)

DEFAULT_STARTING_STEP_NAME = "Starting Step"
HIGH_FLOW_DEPTH = 4
DEFAULT_DATE_RANGE_PRESET = "last_3_months"
DATE_RANGE_PRESETS = (
    "last_30_days",
    "last_3_months",
    "last_6_months",
    "last_12_months",
    "this_year",
    "last_year",
)


def _binding_key_value(binding_key: BindingKey | None):
    """Server form of a binding key, or None if nothing usable is set."""
    if binding_key is None or not binding_key.dimension:
        return None
    return binding_key.dimension


def clamp_flow_depth(value: int) -> int:
    return max(FLOW_MIN_DEPTH, min(FLOW_MAX_DEPTH, value))


# --- funnel ---


def validate_funnel(state: FunnelState, meta: CubeMeta | None = None) -> ValidationResult:
    """Check a funnel is complete enough to run.

    metadata is optional - without it we only check the shape of the state,
    with it the binding key members are checked for existence too.
    """
    result = ValidationResult()

    if _binding_key_value(state.binding_key) is None:
        result.add_error("missing_binding_key", "Select a binding key to link funnel steps")
    if not state.time_dimension:
        result.add_error("missing_time_dimension", "Select a time dimension to order funnel steps")

    complete_steps = [s for s in state.steps if s.cube and s.name]
    if len(complete_steps) < 2:
        result.add_error("too_few_steps", "A funnel needs at least 2 steps with a cube and a name")

    for index, step in enumerate(state.steps):
        if not (step.cube and step.name):
            result.add_warning(
                "incomplete_step",
                f"Step {index + 1} has no cube or name and will be skipped",
                query_index=index,
            )
        if step.time_to_convert and not ISO_DURATION.match(step.time_to_convert):
            result.add_error(
                "time_window",
                f'Invalid time window format "{step.time_to_convert}". '
                "Expected ISO 8601 duration (e.g., P7D, PT1H)",
                query_index=index,
            )

    names = [s.name.lower() for s in state.steps if s.name]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        result.add_warning("duplicate_steps", f"Duplicate step names: {', '.join(duplicates)}")

    if state.binding_key is not None and isinstance(state.binding_key.dimension, list):
        mapped_cubes = {m.cube for m in state.binding_key.dimension}
        for index, step in enumerate(complete_steps):
            if step.cube not in mapped_cubes:
                result.add_error(
                    "cross_cube",
                    f'Step {index + 1} uses cube "{step.cube}" '
                    "but no binding key mapping exists for it",
                    query_index=index,
                )

    if meta is not None and state.binding_key is not None:
        _check_binding_key_exists(state.binding_key, meta, result)

    return result


def _check_binding_key_exists(
    binding_key: BindingKey, meta: CubeMeta, result: ValidationResult
) -> None:
    if isinstance(binding_key.dimension, str):
        cube_name = binding_key.dimension.split(".")[0]
        if not meta.has_cube(cube_name):
            result.add_error("binding_key", f'Cube "{cube_name}" not found for binding key')
        elif meta.find_dimension(binding_key.dimension) is None:
            result.add_error(
                "binding_key",
                f'Dimension "{binding_key.dimension}" not found in cube "{cube_name}"',
            )
        return

    for mapping in binding_key.dimension:
        if not meta.has_cube(mapping.cube):
            result.add_error(
                "cross_cube", f'Cube "{mapping.cube}" not found for binding key mapping'
            )
        elif meta.find_dimension(mapping.dimension) is None:
            result.add_error(
                "cross_cube",
                f'Dimension "{mapping.dimension}" not found in cube "{mapping.cube}"',
            )


def compile_funnel(state: FunnelState, meta: CubeMeta | None = None) -> FunnelQuery | None:
    if not validate_funnel(state, meta).is_valid:
        return None

    steps = [
        FunnelQueryStep(
            name=s.name,
            cube=s.cube,
            filter=list(s.filters) or None,
            time_to_convert=s.time_to_convert,
        )
        for s in state.steps
        if s.cube and s.name
    ]
    return FunnelQuery(
        binding_key=_binding_key_value(state.binding_key),
        time_dimension=state.time_dimension,
        steps=steps,
    )


# --- flow ---


def validate_flow(state: FlowState) -> ValidationResult:
    result = ValidationResult()
    if _binding_key_value(state.binding_key) is None:
        result.add_error("missing_binding_key", "Select a binding key to track entities")
    if not state.time_dimension:
        result.add_error("missing_time_dimension", "Select a time dimension to order events")
    if not state.event_dimension:
        result.add_error("missing_event_dimension", "Select the dimension that names each event")
    if not state.starting_step.filters:
        result.add_error(
            "missing_starting_step", "Add at least one filter to define the starting step"
        )
    if not state.starting_step.name:
        result.add_warning("unnamed_starting_step", "Starting step has no name - using default")
    if state.steps_before >= HIGH_FLOW_DEPTH or state.steps_after >= HIGH_FLOW_DEPTH:
        result.add_warning(
            "high_depth", "High step depth (4-5) may impact query performance on large datasets"
        )
    return result


def compile_flow(state: FlowState, chart_type: str | None = None) -> FlowQuery | None:
    """Compile a flow analysis.

    the chart type decides the output mode: sunburst needs strictly forward,
    path-qualified nodes so stepsBefore is pinned to 0 there. sankey gets
    whatever was configured.
    """
    if not validate_flow(state).is_valid:
        return None

    filters = list(state.starting_step.filters)
    output_mode = "sunburst" if chart_type == "sunburst" else "sankey"
    steps_before = 0 if output_mode == "sunburst" else clamp_flow_depth(state.steps_before)

    return FlowQuery(
        binding_key=_binding_key_value(state.binding_key),
        time_dimension=state.time_dimension,
        starting_step=FlowQueryStartingStep(
            name=state.starting_step.name or DEFAULT_STARTING_STEP_NAME,
            # a lone filter goes over bare, several as a list
            filter=filters[0] if len(filters) == 1 else filters,
        ),
        steps_before=steps_before,
        steps_after=clamp_flow_depth(state.steps_after),
        event_dimension=state.event_dimension,
        output_mode=output_mode,
        join_strategy=state.join_strategy,
    )


# --- retention ---


def _shift_months(day: date, months: int) -> date:
    """First of the month `months` away from day's month."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def date_range_from_preset(preset: str, today: date | None = None) -> DateRange:
    """Resolve a named preset to concrete dates.

    the month based presets run from the first of N months ago to the end of
    last month, so they always cover whole months. unknown presets (custom)
    fall back to last_3_months.
    """
    today = today or date.today()
    end_of_last_month = today.replace(day=1) - timedelta(days=1)

    if preset == "last_30_days":
        start = today - timedelta(days=30)
        return DateRange(start=start.isoformat(), end=today.isoformat())
    if preset == "last_6_months":
        start = _shift_months(today, -6)
        return DateRange(start=start.isoformat(), end=end_of_last_month.isoformat())
    if preset == "last_12_months":
        start = _shift_months(today, -12)
        return DateRange(start=start.isoformat(), end=end_of_last_month.isoformat())
    if preset == "this_year":
        return DateRange(start=date(today.year, 1, 1).isoformat(), end=today.isoformat())
    if preset == "last_year":
        return DateRange(
            start=date(today.year - 1, 1, 1).isoformat(),
            end=date(today.year - 1, 12, 31).isoformat(),
        )
    return DateRange(start=_shift_months(today, -3).isoformat(), end=end_of_last_month.isoformat())


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def validate_retention(state: RetentionState) -> ValidationResult:
    result = ValidationResult()

    if not state.cube:
        result.add_warning("missing_cube", "Select a cube for retention analysis")
    if _binding_key_value(state.binding_key) is None:
        result.add_error(
            "missing_binding_key", "Select a user identifier (binding key) to track retention"
        )
    if not state.time_dimension:
        result.add_error("missing_time_dimension", "Select a timestamp dimension for the analysis")

    date_range = state.date_range
    if date_range is None or not date_range.start or not date_range.end:
        result.add_error("missing_date_range", "Date range is required for retention analysis")
    else:
        start = _parse_date(date_range.start)
        end = _parse_date(date_range.end)
        if start is None:
            result.add_error("invalid_date", "Invalid start date format")
        if end is None:
            result.add_error("invalid_date", "Invalid end date format")
        if start and end and start > end:
            result.add_error("invalid_date", "Start date must be before or equal to end date")

    if state.periods < 1:
        result.add_error("invalid_periods", "At least 1 retention period is required")
    if state.periods > RETENTION_MAX_PERIODS:
        result.add_warning("too_many_periods", "More than 52 periods may impact performance")

    return result


def with_default_date_range(state: RetentionState, today: date | None = None) -> RetentionState:
    if state.date_range is not None:
        return state
    return state.model_copy(
        update={"date_range": date_range_from_preset(DEFAULT_DATE_RANGE_PRESET, today)}
    )


def compile_retention(state: RetentionState, today: date | None = None) -> RetentionQuery | None:
    """Compile a retention analysis.

    the cube itself isn't part of the query (the binding key and time
    dimension already name it), so a missing cube is only a warning.
    """
    state = with_default_date_range(state, today)

    if not validate_retention(state).is_valid:
        return None

    cohort = list(state.cohort_filters)
    activity = list(state.activity_filters)
    return RetentionQuery(
        time_dimension=state.time_dimension,
        binding_key=_binding_key_value(state.binding_key),
        date_range=state.date_range,
        granularity=state.granularity,
        periods=state.periods,
        retention_type=state.retention_type,
        cohort_filters=(cohort[0] if len(cohort) == 1 else cohort) or None,
        activity_filters=(activity[0] if len(activity) == 1 else activity) or None,
        breakdown_dimensions=list(state.breakdown_dimensions) or None,
    )
