"""Drill option and drill query construction.

given a click on a chart, work out where the user can go from here (finer or
coarser time buckets, the next level of a dimension hierarchy, a measure's
drill members) and rewrite the query for the option they pick. all pure -
the interaction engine in queryforge.drill owns the path and snapshots.
"""

import calendar
import re
from datetime import date, datetime, timedelta
from typing import Any

from queryforge.compiler.filters import remove_member_filters
from queryforge.compiler.query_builder import generate_id
from queryforge.errors import DrillError
from queryforge.models.drill import (
    DataPointClick,
    DrillOption,
    DrillOptionType,
    DrillPathEntry,
    DrillResult,
)
from queryforge.models.meta import CubeMeta
from queryforge.models.query import CompiledQuery, SimpleFilter, TimeDimension

# coarse to fine
TIME_GRANULARITY_ORDER = ("year", "quarter", "month", "week", "day", "hour", "minute", "second")
DEFAULT_DRILL_GRANULARITIES = ["year", "quarter", "month", "week", "day", "hour"]
DETAILS_ROW_LIMIT = 100

_YEAR_MONTH = re.compile(r"^(\d{4})(?:-(\d{1,2}))?$")


def _drill_id() -> str:
    return f"drill-{generate_id()}"


def get_current_granularity(query: CompiledQuery) -> str | None:
    if not query.time_dimensions:
        return None
    granularity = query.time_dimensions[0].granularity
    return granularity if granularity in TIME_GRANULARITY_ORDER else None


def get_time_dimension_granularities(dimension: str, meta: CubeMeta) -> list[str]:
    member = meta.find_dimension(dimension)
    if member is not None and member.type == "time" and member.granularities:
        return list(member.granularities)
    return list(DEFAULT_DRILL_GRANULARITIES)


def get_measure_drill_members(measure: str, meta: CubeMeta) -> list[str] | None:
    member = meta.find_measure(measure)
    if member is not None and member.drill_members:
        return list(member.drill_members)
    return None


def is_drill_enabled(query: CompiledQuery, meta: CubeMeta | None) -> bool:
    """Whether clicking a data point could offer anything at all."""
    if meta is None:
        return False
    if query.time_dimensions or query.dimensions:
        return True
    return any(get_measure_drill_members(m, meta) for m in query.measures or [])


# --- options ---


def build_drill_options(
    event: DataPointClick, query: CompiledQuery, meta: CubeMeta | None
) -> list[DrillOption]:
    """All drill options for a click: time first, then hierarchy, then details."""
    if meta is None:
        return []

    options = _time_options(query, meta)
    options.extend(_hierarchy_options(query, meta))

    measure = event.clicked_field
    for drill_member in get_measure_drill_members(measure, meta) or []:
        options.append(
            DrillOption(
                id=f"details-{measure}-{drill_member}",
                label=f"Show by {meta.dimension_label(drill_member)}",
                type=DrillOptionType.DETAILS,
                icon="table",
                measure=measure,
                target_dimension=drill_member,
            )
        )
    return options


def _time_options(query: CompiledQuery, meta: CubeMeta) -> list[DrillOption]:
    if not query.time_dimensions:
        return []

    time_dim = query.time_dimensions[0]
    current = time_dim.granularity
    available = get_time_dimension_granularities(time_dim.dimension, meta)

    # no granularity yet: offer every bucket size
    if not current:
        return [
            DrillOption(
                id=f"time-set-{g}",
                label=f"View by {g.capitalize()}",
                type=DrillOptionType.DRILL_DOWN,
                icon="time",
                target_granularity=g,
            )
            for g in available
        ]

    # a granularity the metadata doesn't list only gets drill-down options,
    # same as indexing from -1
    current_index = available.index(current) if current in available else -1
    options = [
        DrillOption(
            id=f"time-down-{g}",
            label=f"Drill to {g.capitalize()}",
            type=DrillOptionType.DRILL_DOWN,
            icon="time",
            target_granularity=g,
        )
        for g in available[current_index + 1 :]
    ]
    for g in reversed(available[: max(current_index, 0)]):
        options.append(
            DrillOption(
                id=f"time-up-{g}",
                label=f"Roll up to {g.capitalize()}",
                type=DrillOptionType.DRILL_UP,
                icon="time",
                target_granularity=g,
            )
        )
    return options


def _hierarchy_options(query: CompiledQuery, meta: CubeMeta) -> list[DrillOption]:
    options = []
    for dimension in query.dimensions or []:
        found = meta.find_hierarchy_for_dimension(dimension)
        if found is None:
            continue
        hierarchy, level = found

        if level < len(hierarchy.levels) - 1:
            target = hierarchy.levels[level + 1]
            options.append(
                DrillOption(
                    id=f"hierarchy-down-{hierarchy.name}-{target}",
                    label=f"Drill to {meta.dimension_label(target)}",
                    type=DrillOptionType.DRILL_DOWN,
                    icon="hierarchy",
                    hierarchy=hierarchy.name,
                    target_dimension=target,
                )
            )
        if level > 0:
            target = hierarchy.levels[level - 1]
            options.append(
                DrillOption(
                    id=f"hierarchy-up-{hierarchy.name}-{target}",
                    label=f"Roll up to {meta.dimension_label(target)}",
                    type=DrillOptionType.DRILL_UP,
                    icon="hierarchy",
                    hierarchy=hierarchy.name,
                    target_dimension=target,
                )
            )
    return options


# --- queries ---


def build_drill_query(
    option: DrillOption, event: DataPointClick, query: CompiledQuery, meta: CubeMeta
) -> DrillResult:
    """Rewrite query for the chosen drill option.

    Raises:
        DrillError: if the option can't be applied (unknown type, details
            option without a target dimension).
    """
    if option.type == DrillOptionType.DRILL_DOWN:
        return _drill_down(option, event, query, meta)
    elif option.type == DrillOptionType.DRILL_UP:
        return _drill_up(option, query, meta)
    elif option.type == DrillOptionType.DETAILS:
        return _details(option, event, query, meta)
    raise DrillError(f"Unknown drill type: {option.type}")


def _replace_hierarchy_level(
    dimensions: list[str], option: DrillOption, meta: CubeMeta
) -> tuple[list[str], list[str]]:
    """Swap whichever dimension sits in the option's hierarchy for the target.

    returns the new dimensions and the hierarchy levels (empty if the target
    isn't in a hierarchy).
    """
    levels: list[str] = []
    if option.hierarchy:
        found = meta.find_hierarchy_for_dimension(option.target_dimension)
        if found is not None:
            levels = found[0].levels
    new_dimensions = [option.target_dimension if d in levels else d for d in dimensions]
    return new_dimensions, levels


def _dimension_in_hierarchy(
    dimensions: list[str], hierarchy_name: str | None, meta: CubeMeta
) -> str | None:
    for dimension in dimensions:
        found = meta.find_hierarchy_for_dimension(dimension)
        if found is not None and found[0].name == hierarchy_name:
            return dimension
    return None


def _drill_down(
    option: DrillOption, event: DataPointClick, query: CompiledQuery, meta: CubeMeta
) -> DrillResult:
    x_value = event.x_value

    if option.target_granularity and query.time_dimensions:
        time_dim = query.time_dimensions[0]
        new_query = query.model_copy(
            update={
                "time_dimensions": [
                    time_dim.model_copy(
                        update={
                            "granularity": option.target_granularity,
                            # narrow to the clicked bucket at the old granularity
                            "date_range": date_range_for_period(
                                str(x_value), time_dim.granularity or "month"
                            ),
                        }
                    )
                ]
            }
        )
        entry = DrillPathEntry(
            id=_drill_id(),
            label=str(x_value),
            query=new_query,
            granularity=option.target_granularity,
            clicked_value=x_value,
        )
        return DrillResult(query=new_query, path_entry=entry)

    if option.target_dimension:
        current = list(query.dimensions or [])
        dimensions, _ = _replace_hierarchy_level(current, option, meta)
        if option.target_dimension not in dimensions:
            dimensions.append(option.target_dimension)

        update: dict[str, Any] = {"dimensions": dimensions}
        added = []
        clicked_dim = _dimension_in_hierarchy(current, option.hierarchy, meta)
        if clicked_dim is not None and x_value is not None:
            added.append(SimpleFilter(member=clicked_dim, operator="equals", values=[str(x_value)]))
            update["filters"] = [*(query.filters or []), *added]

        new_query = query.model_copy(update=update)
        entry = DrillPathEntry(
            id=_drill_id(),
            label=str(x_value),
            query=new_query,
            filters=added,
            dimension=option.target_dimension,
            hierarchy=option.hierarchy,
            clicked_value=x_value,
        )
        return DrillResult(query=new_query, path_entry=entry)

    return DrillResult(
        query=query,
        path_entry=DrillPathEntry(
            id=_drill_id(), label="Drill", query=query, clicked_value=x_value
        ),
    )


def _drill_up(option: DrillOption, query: CompiledQuery, meta: CubeMeta) -> DrillResult:
    if option.target_granularity and query.time_dimensions:
        time_dim = query.time_dimensions[0]
        # granularity only, the date range stays whatever it was
        new_query = query.model_copy(
            update={
                "time_dimensions": [
                    time_dim.model_copy(update={"granularity": option.target_granularity})
                ]
            }
        )
        entry = DrillPathEntry(
            id=_drill_id(),
            label=f"By {option.target_granularity.capitalize()}",
            query=new_query,
            granularity=option.target_granularity,
        )
        return DrillResult(query=new_query, path_entry=entry)

    if option.target_dimension:
        dimensions, levels = _replace_hierarchy_level(list(query.dimensions or []), option, meta)
        update: dict[str, Any] = {"dimensions": dimensions}
        if query.filters and levels:
            finer = levels[levels.index(option.target_dimension) + 1 :]
            update["filters"] = remove_member_filters(list(query.filters), finer) or None

        new_query = query.model_copy(update=update)
        entry = DrillPathEntry(
            id=_drill_id(),
            label=f"By {meta.dimension_label(option.target_dimension)}",
            query=new_query,
            dimension=option.target_dimension,
            hierarchy=option.hierarchy,
        )
        return DrillResult(query=new_query, path_entry=entry)

    return DrillResult(
        query=query, path_entry=DrillPathEntry(id=_drill_id(), label="Roll Up", query=query)
    )


def _details(
    option: DrillOption, event: DataPointClick, query: CompiledQuery, meta: CubeMeta
) -> DrillResult:
    measure = option.measure or event.clicked_field
    target = option.target_dimension
    if not target:
        raise DrillError(f"No target dimension specified for details drill on measure {measure}")

    x_value = event.x_value
    x_axis = None
    if query.dimensions:
        x_axis = query.dimensions[0]
    elif query.time_dimensions:
        x_axis = query.time_dimensions[0].dimension

    if meta.is_time_dimension(target):
        current_td = query.time_dimensions[0] if query.time_dimensions else None
        dimensions = None
        time_dimensions = [
            TimeDimension(
                dimension=target,
                granularity=(current_td.granularity if current_td else None) or "day",
                date_range=current_td.date_range if current_td else None,
            )
        ]
    else:
        dimensions = [target]
        time_dimensions = query.time_dimensions  # keep the time context

    filters = list(query.filters or [])
    has_x_value = x_value is not None and x_value != ""
    if x_axis and has_x_value:
        filters.append(SimpleFilter(member=x_axis, operator="equals", values=[str(x_value)]))

    new_query = CompiledQuery(
        measures=[measure],
        dimensions=dimensions,
        time_dimensions=time_dimensions,
        filters=filters or None,
        limit=DETAILS_ROW_LIMIT,
    )
    chart_config = {"xAxis": [target], "yAxis": [measure]}

    target_label = meta.dimension_label(target)
    if has_x_value:
        x_label = meta.dimension_label(x_axis) if x_axis else None
        label = f"By {target_label} ({x_label}: {x_value})"
    else:
        label = f"By {target_label}"

    entry = DrillPathEntry(
        id=_drill_id(),
        label=label,
        query=new_query,
        filters=filters,
        clicked_value=x_value,
        chart_config=chart_config,
    )
    return DrillResult(query=new_query, path_entry=entry, chart_config=chart_config)


# --- period math ---


def _parse_period(value: str) -> date | None:
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        pass
    match = _YEAR_MONTH.match(value.strip())
    if match is None:
        return None
    year, month = match.groups()
    try:
        return date(int(year), int(month or 1), 1)
    except ValueError:
        return None


def date_range_for_period(value: str, granularity: str) -> list[str]:
    """The [start, end] dates covering the bucket a clicked value belongs to.

    values we can't parse go back unchanged as [value, value] and the server
    gets to decide what they mean.
    """
    day = _parse_period(value)
    if day is None:
        return [value, value]

    if granularity == "year":
        return [f"{day.year}-01-01", f"{day.year}-12-31"]
    if granularity == "quarter":
        first_month = (day.month - 1) // 3 * 3 + 1
        last_month = first_month + 2
        last_day = calendar.monthrange(day.year, last_month)[1]
        return [
            date(day.year, first_month, 1).isoformat(),
            date(day.year, last_month, last_day).isoformat(),
        ]
    if granularity == "month":
        last_day = calendar.monthrange(day.year, day.month)[1]
        return [day.replace(day=1).isoformat(), day.replace(day=last_day).isoformat()]
    if granularity == "week":
        monday = day - timedelta(days=day.weekday())
        return [monday.isoformat(), (monday + timedelta(days=6)).isoformat()]
    return [day.isoformat(), day.isoformat()]
