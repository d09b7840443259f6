"""Query builder: one QueryState in, one CompiledQuery out.

pure function of its input, never touches the store. the only rule that
matters for the wire format is the omission rule - empty sources produce
absent keys, not [] or {}.
"""

import uuid

from queryforge.models.query import CompiledQuery, TimeDimension
from queryforge.models.state import BreakdownItem, QueryState

DEFAULT_TIME_GRANULARITY = "day"


def generate_id() -> str:
    return uuid.uuid4().hex[:12]


def generate_metric_label(index: int) -> str:
    """Spreadsheet-style label for the index-th metric: A..Z, AA, AB...

    >>> [generate_metric_label(i) for i in (0, 25, 26, 27)]
    ['A', 'Z', 'AA', 'AB']
    """
    if index < 0:
        raise ValueError(f"Metric index must be >= 0, got {index}")
    label = ""
    n = index + 1
    while n > 0:
        n, remainder = divmod(n - 1, 26)
        label = chr(ord("A") + remainder) + label
    return label


def build(state: QueryState, breakdowns: list[BreakdownItem] | None = None) -> CompiledQuery:
    """Compile a query state.

    Args:
        state: The query state to compile.
        breakdowns: Use these instead of the state's own breakdowns. The
            merge coordinator passes the first query's breakdowns here.

    Returns:
        CompiledQuery with empty sections left out.
    """
    if breakdowns is None:
        breakdowns = state.breakdowns

    measures = [m.field for m in state.metrics]
    dimensions = [b.field for b in breakdowns if not b.is_time_dimension]
    time_dimensions = [
        TimeDimension(dimension=b.field, granularity=b.granularity or DEFAULT_TIME_GRANULARITY)
        for b in breakdowns
        if b.is_time_dimension
    ]

    return CompiledQuery(
        measures=measures or None,
        dimensions=dimensions or None,
        time_dimensions=time_dimensions or None,
        filters=list(state.filters) or None,
        order=dict(state.order) if state.order else None,
    )


def has_query_content(query: CompiledQuery | None) -> bool:
    return query is not None and query.has_content()
