"""Basic usage example for QueryForge.

everything here runs offline - it builds analyses with the store, prints the
payloads they compile to and walks a drill-down. point QF_API_URL at a query
api and use `qf run` to actually execute them.
"""

import json
from pathlib import Path

from queryforge import QueryStateStore
from queryforge.drill import DrillInteraction
from queryforge.executor.coordinator import plan_execution
from queryforge.models import CubeMeta, DataPointClick
from queryforge.parser.loader import load_analysis
from queryforge.store import (
    AddBreakdown,
    AddMetric,
    AddQuery,
    SetMergeStrategy,
    ToggleMetric,
)

EXAMPLES_DIR = Path(__file__).parent

META = CubeMeta.model_validate(
    {
        "cubes": [
            {
                "name": "Orders",
                "measures": [
                    {
                        "name": "Orders.count",
                        "title": "Order Count",
                        "drillMembers": ["Orders.status"],
                    },
                    {"name": "Orders.revenue", "title": "Revenue"},
                ],
                "dimensions": [
                    {"name": "Orders.status", "title": "Status"},
                    {
                        "name": "Orders.createdAt",
                        "title": "Created At",
                        "type": "time",
                        "granularities": ["year", "quarter", "month", "week", "day"],
                    },
                ],
            }
        ]
    }
)


def show(title: str, payload) -> None:
    print(f"\n{title}:")
    print("   " + json.dumps(payload, indent=2).replace("\n", "\n   "))


def main():
    """Demonstrate QueryForge capabilities."""
    print("=" * 60)
    print("QueryForge Query Compilation Demo")
    print("=" * 60)

    store = QueryStateStore(strict=True)

    # 1. A single query tab
    store.dispatch(AddMetric("Orders.count"))
    store.dispatch(AddBreakdown("Orders.createdAt", is_time_dimension=True, granularity="month"))
    show("1. Orders per month", store.build_active_query().to_payload())

    # 2. A second tab turns it into a multi-query
    store.dispatch(AddQuery())
    store.dispatch(ToggleMetric("Orders.count"))
    store.dispatch(AddMetric("Orders.revenue"))
    store.dispatch(SetMergeStrategy("merge"))
    plan = plan_execution(store.state)
    print(f"\n2. Execution mode: {plan.mode.value}, merged on {plan.merge_keys}")
    show("   Payloads", plan.payloads())

    # 3. Analyses from yaml
    for name in ("orders_by_month.yaml", "signup_funnel.yaml"):
        plan = plan_execution(load_analysis(EXAMPLES_DIR / name))
        show(f"3. {name} ({plan.mode.value})", plan.payloads())

    # 4. Drill down from a month into weeks
    query = store.build_active_query()
    drill = DrillInteraction(query, META)
    drill.handle_data_point_click(
        DataPointClick(clicked_field="Orders.revenue", x_value="2024-03-01")
    )
    print("\n4. Drill options:")
    for option in drill.menu_options:
        print(f"   {option.id}: {option.label}")

    week = next(o for o in drill.menu_options if o.target_granularity == "week")
    drill.select_option(week)
    show("   Drilled query", drill.query.to_payload())
    print(f"   Breadcrumbs: {[entry.label for entry in drill.path]}")

    drill.navigate_back()
    print(f"   Back at root: {drill.query == query}")

    print("\n" + "=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
