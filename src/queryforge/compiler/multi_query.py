"""Multi-query merge coordinator.

decides whether several query tabs should run as one multi-query, applies
merge-mode breakdown sharing, checks the combination makes sense and
recombines the result rows afterwards.
"""

import json
from typing import Any

from queryforge.compiler.query_builder import build
from queryforge.models.query import (
    CompiledQuery,
    MergeStrategy,
    MultiQueryConfig,
    ResultSet,
    ValidationResult,
)
from queryforge.models.state import QueryState

QUERY_INDEX_KEY = "__queryIndex"
QUERY_LABEL_KEY = "__queryLabel"


def is_multi_query_mode(states: list[QueryState]) -> bool:
    """True when at least two tabs actually have something in them.

    one populated tab next to a bunch of empty ones is still a single query.
    """
    if len(states) < 2:
        return False
    return sum(1 for s in states if s.has_content()) >= 2


def build_all_queries(
    states: list[QueryState],
    merge_strategy: MergeStrategy = MergeStrategy.CONCAT,
) -> list[CompiledQuery]:
    """Build every tab, sharing the first tab's breakdowns under merge.

    the other tabs keep their own breakdowns in state, they're just not used
    while merge is on.
    """
    if not states:
        return []
    shared = states[0].breakdowns
    queries = []
    for index, state in enumerate(states):
        if index > 0 and merge_strategy == MergeStrategy.MERGE:
            queries.append(build(state, breakdowns=shared))
        else:
            queries.append(build(state))
    return queries


def get_merge_keys(
    states: list[QueryState],
    merge_strategy: MergeStrategy = MergeStrategy.CONCAT,
) -> list[str] | None:
    if merge_strategy != MergeStrategy.MERGE or not states:
        return None
    keys = [b.field for b in states[0].breakdowns]
    return keys or None


def build_multi_query_config(
    states: list[QueryState],
    merge_strategy: MergeStrategy = MergeStrategy.CONCAT,
) -> MultiQueryConfig | None:
    """Assemble the multi-query payload, or None to fall back to a single query."""
    if not is_multi_query_mode(states):
        return None

    queries = [q for q in build_all_queries(states, merge_strategy) if q.has_content()]
    if len(queries) < 2:
        return None

    return MultiQueryConfig(
        queries=queries,
        merge_strategy=merge_strategy,
        merge_keys=get_merge_keys(states, merge_strategy),
        query_labels=[f"Q{i + 1}" for i in range(len(queries))],
    )


# --- validation ---


def validate_multi_query_config(
    queries: list[CompiledQuery],
    merge_strategy: MergeStrategy,
    merge_keys: list[str] | None = None,
) -> ValidationResult:
    """Check a set of queries can be combined.

    measure collisions and mismatched date ranges only warn. under merge,
    misaligned time dimensions and missing merge keys are errors since the
    rows can't be lined up.
    """
    result = ValidationResult()
    if len(queries) < 2:
        return result

    _check_measure_collisions(queries, result)
    _check_date_ranges(queries, result)

    if merge_strategy == MergeStrategy.MERGE:
        _check_time_alignment(queries, result)
        if merge_keys:
            _check_merge_keys(queries, merge_keys, result)

    return result


def _check_measure_collisions(queries: list[CompiledQuery], result: ValidationResult) -> None:
    seen: dict[str, list[int]] = {}
    for index, query in enumerate(queries):
        for measure in query.measures or []:
            seen.setdefault(measure, []).append(index)

    collisions = [m for m, indices in seen.items() if len(indices) > 1]
    if collisions:
        quoted = '", "'.join(collisions)
        result.add_warning(
            "measure_collision",
            f'Measure(s) "{quoted}" appear in multiple queries - first value will be used',
        )


def _check_date_ranges(queries: list[CompiledQuery], result: ValidationResult) -> None:
    ranges = set()
    for query in queries:
        date_range = query.time_dimensions[0].date_range if query.time_dimensions else None
        ranges.add(json.dumps(date_range))
    if len(ranges) > 1:
        result.add_warning(
            "asymmetric_date_range",
            "Queries have different date ranges - "
            "some data points may be missing in merged results",
        )


def _check_time_alignment(queries: list[CompiledQuery], result: ValidationResult) -> None:
    reference = queries[0].time_dimensions or []
    if not reference:
        return

    for index, query in enumerate(queries[1:], start=1):
        time_dims = query.time_dimensions or []
        if not time_dims:
            result.add_error(
                "missing_time_dimension",
                f'Query {index + 1} is missing time dimension "{reference[0].dimension}"',
                query_index=index,
            )
            continue

        for ref in reference:
            match = next((td for td in time_dims if td.dimension == ref.dimension), None)
            if match is not None and match.granularity != ref.granularity:
                result.add_error(
                    "granularity_mismatch",
                    f'Query {index + 1} uses "{match.granularity}" granularity '
                    f'but Query 1 uses "{ref.granularity}"',
                    query_index=index,
                )


def _check_merge_keys(
    queries: list[CompiledQuery], merge_keys: list[str], result: ValidationResult
) -> None:
    for index, query in enumerate(queries):
        fields = set(query.dimensions or [])
        fields.update(td.dimension for td in query.time_dimensions or [])
        for key in merge_keys:
            if key not in fields:
                result.add_error(
                    "missing_merge_key",
                    f'Query {index + 1} is missing merge dimension "{key}"',
                    query_index=index,
                )


# --- result recombination ---


def merge_query_results(
    results: list[ResultSet],
    queries: list[CompiledQuery],
    merge_strategy: MergeStrategy,
    merge_keys: list[str] | None = None,
    labels: list[str] | None = None,
) -> list[dict[str, Any]]:
    """Recombine per-query rows into one row list for the renderer."""
    if not results:
        return []
    if len(results) == 1:
        return list(results[0].data)
    if merge_strategy == MergeStrategy.MERGE and merge_keys:
        return _merge_by_key(results, queries, merge_keys)
    return _concat(results, labels)


def _concat(results: list[ResultSet], labels: list[str] | None) -> list[dict[str, Any]]:
    rows = []
    for index, result in enumerate(results):
        label = labels[index] if labels and index < len(labels) else f"Query {index + 1}"
        for row in result.data:
            rows.append({**row, QUERY_INDEX_KEY: index, QUERY_LABEL_KEY: label})
    return rows


def _merge_by_key(
    results: list[ResultSet], queries: list[CompiledQuery], merge_keys: list[str]
) -> list[dict[str, Any]]:
    merged: dict[str, dict[str, Any]] = {}

    for index, result in enumerate(results):
        measures = (queries[index].measures or []) if index < len(queries) else []
        for row in result.data:
            key = "|".join(_key_part(row.get(k)) for k in merge_keys)
            target = merged.setdefault(key, {k: row.get(k) for k in merge_keys})

            # same measure in several queries: first one wins
            for measure in measures:
                if measure not in target:
                    target[measure] = row.get(measure)

            if index == 0:
                for field, value in row.items():
                    if field not in merge_keys and field not in measures:
                        target.setdefault(field, value)

    return sorted(merged.values(), key=lambda r: _key_part(r.get(merge_keys[0])))


def _key_part(value: Any) -> str:
    return "" if value is None else str(value)
