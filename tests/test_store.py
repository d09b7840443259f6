"""Tests for the query state store."""

import pytest

from queryforge.errors import InvariantViolationError
from queryforge.models import (
    AnalysisType,
    CompiledQuery,
    GroupFilter,
    MergeStrategy,
    SimpleFilter,
)
from queryforge.store import (
    AddBreakdown,
    AddFunnelStep,
    AddMetric,
    AddQuery,
    DropFieldToFilter,
    OverrideActiveQuery,
    QueryStateStore,
    RemoveFunnelStep,
    RemoveMetric,
    RemoveQuery,
    ReorderMetrics,
    ResetState,
    SetActiveQuery,
    SetAnalysisType,
    SetBreakdownGranularity,
    SetChartType,
    SetFlowSteps,
    SetFunnelCube,
    SetMergeStrategy,
    SetOrder,
    SetRetentionPeriods,
    ToggleBreakdownComparison,
    ToggleMetric,
    UpdateFunnel,
    UpdateFunnelStep,
    reduce,
)


class TestMetrics:
    def test_labels_follow_count(self, store: QueryStateStore):
        """Metrics are labelled A, B, C in the order they're added."""
        for field in ("Orders.count", "Orders.totalAmount", "Orders.avgAmount"):
            store.dispatch(AddMetric(field))
        assert [m.label for m in store.state.active_query.metrics] == ["A", "B", "C"]

    def test_freed_label_not_reused(self, store: QueryStateStore):
        """Removing A and adding another metric doesn't hand out A again."""
        store.dispatch(AddMetric("Orders.count"))
        store.dispatch(AddMetric("Orders.totalAmount"))
        first = store.state.active_query.metrics[0]

        store.dispatch(RemoveMetric(first.id))
        store.dispatch(AddMetric("Orders.avgAmount"))

        labels = [m.label for m in store.state.active_query.metrics]
        assert "A" not in labels
        assert labels[-1] == "B"

    def test_user_label(self, store: QueryStateStore):
        store.dispatch(AddMetric("Orders.totalAmount", label="Revenue"))
        assert store.state.active_query.metrics[0].label == "Revenue"

    def test_toggle_metric(self, store: QueryStateStore):
        """Toggling adds a missing metric and removes a present one."""
        store.dispatch(ToggleMetric("Orders.count"))
        assert len(store.state.active_query.metrics) == 1
        store.dispatch(ToggleMetric("Orders.count"))
        assert store.state.active_query.metrics == []

    def test_remove_metric_clears_its_order(self, store: QueryStateStore):
        store.dispatch(AddMetric("Orders.count"))
        store.dispatch(SetOrder("Orders.count", "desc"))
        metric_id = store.state.active_query.metrics[0].id

        store.dispatch(RemoveMetric(metric_id))
        assert store.state.active_query.order is None

    def test_reorder(self, store: QueryStateStore):
        store.dispatch(AddMetric("Orders.count"))
        store.dispatch(AddMetric("Orders.totalAmount"))
        store.dispatch(ReorderMetrics(1, 0))
        assert store.build_active_query().measures == ["Orders.totalAmount", "Orders.count"]


class TestBreakdowns:
    def test_time_breakdown_defaults_to_month(self, store: QueryStateStore):
        store.dispatch(AddBreakdown("Orders.createdAt", is_time_dimension=True))
        assert store.state.active_query.breakdowns[0].granularity == "month"

    def test_one_time_breakdown_per_query(self, store: QueryStateStore):
        """A second time breakdown is ignored."""
        store.dispatch(AddBreakdown("Orders.createdAt", is_time_dimension=True))
        store.dispatch(AddBreakdown("Orders.updatedAt", is_time_dimension=True))
        assert len(store.state.active_query.breakdowns) == 1

    def test_regular_breakdown_has_no_granularity(self, store: QueryStateStore):
        store.dispatch(AddBreakdown("Orders.status", granularity="month"))
        assert store.state.active_query.breakdowns[0].granularity is None

    def test_comparison_adds_date_filter_and_line_chart(self, store: QueryStateStore):
        """Turning comparison on needs a date range and a line chart."""
        store.dispatch(AddMetric("Orders.count"))
        store.dispatch(AddBreakdown("Orders.createdAt", is_time_dimension=True))
        breakdown = store.state.active_query.breakdowns[0]

        store.dispatch(ToggleBreakdownComparison(breakdown.id))

        active = store.state.active_query
        assert active.breakdowns[0].enable_comparison
        assert active.filters == [
            SimpleFilter(
                member="Orders.createdAt",
                operator="inDateRange",
                values=[],
                date_range="last 3 months",
            )
        ]
        assert store.state.chart_type == "line"


class TestMergeMode:
    def _two_queries(self, store: QueryStateStore) -> None:
        store.dispatch(AddMetric("Orders.count"))
        store.dispatch(AddBreakdown("Orders.createdAt", is_time_dimension=True))
        store.dispatch(AddQuery())

    def test_add_query_copies_active(self, store: QueryStateStore):
        """A new tab starts as a copy of the active one and becomes active."""
        self._two_queries(store)
        assert len(store.state.query_states) == 2
        assert store.state.active_query_index == 1
        assert store.state.active_query.metrics[0].field == "Orders.count"

    def test_granularity_edit_targets_first_query_under_merge(self, store: QueryStateStore):
        """Under merge, Q2's breakdown edits land on Q1's shared breakdowns."""
        self._two_queries(store)
        store.dispatch(SetMergeStrategy(MergeStrategy.MERGE))
        shared = store.state.query_states[0].breakdowns[0]

        store.dispatch(SetBreakdownGranularity(shared.id, "week"))

        assert store.state.query_states[0].breakdowns[0].granularity == "week"
        queries = store.build_all_queries()
        assert queries[1].time_dimensions == queries[0].time_dimensions
        assert store.merge_keys() == ["Orders.createdAt"]

    def test_remove_query_keeps_one(self, store: QueryStateStore):
        store.dispatch(RemoveQuery(0))
        assert len(store.state.query_states) == 1

    def test_remove_active_query_moves_focus(self, store: QueryStateStore):
        self._two_queries(store)
        store.dispatch(RemoveQuery(1))
        assert store.state.active_query_index == 0
        assert len(store.state.query_states) == 1


class TestInvariants:
    def test_strict_raises(self, store: QueryStateStore):
        """Out-of-range indexes fail loudly in strict mode."""
        with pytest.raises(InvariantViolationError):
            store.dispatch(SetActiveQuery(3))

    def test_lenient_keeps_state(self, caplog):
        """Lenient stores log and leave the state alone."""
        lenient = QueryStateStore(strict=False)
        before = lenient.state
        lenient.dispatch(RemoveFunnelStep(5))
        assert lenient.state is before
        assert "out of range" in caplog.text

    def test_unknown_action(self, store: QueryStateStore):
        with pytest.raises(TypeError):
            reduce(store.state, object())

    def test_snapshots_are_not_mutated(self, store: QueryStateStore):
        """Every action produces a new snapshot, old ones stay as they were."""
        before = store.state
        store.dispatch(AddMetric("Orders.count"))
        assert before.active_query.metrics == []
        assert store.state is not before


class TestFiltersAndOrder:
    def test_drop_field_to_filter(self, store: QueryStateStore):
        store.dispatch(DropFieldToFilter("Orders.status"))
        store.dispatch(DropFieldToFilter("Orders.country"))

        (group,) = store.state.active_query.filters
        assert isinstance(group, GroupFilter)
        assert [f.member for f in group.filters] == ["Orders.status", "Orders.country"]

    def test_set_and_clear_order(self, store: QueryStateStore):
        store.dispatch(SetOrder("Orders.count", "asc"))
        assert store.state.active_query.order == {"Orders.count": "asc"}
        store.dispatch(SetOrder("Orders.count", None))
        assert store.state.active_query.order is None


class TestOverride:
    def test_override_wins_until_edit(self, store: QueryStateStore):
        """A drill override is used until the user edits the query."""
        store.dispatch(AddMetric("Orders.count"))
        drilled = CompiledQuery(measures=["Orders.count"], dimensions=["Orders.city"])

        store.dispatch(OverrideActiveQuery(drilled))
        assert store.build_active_query() == drilled

        store.dispatch(AddMetric("Orders.totalAmount"))
        assert store.state.query_override is None
        assert store.build_active_query().dimensions is None


class TestModes:
    def test_funnel_steps(self, store: QueryStateStore):
        store.dispatch(SetFunnelCube("Events"))
        store.dispatch(AddFunnelStep())
        store.dispatch(AddFunnelStep(name="Purchase"))
        store.dispatch(UpdateFunnelStep(1, {"time_to_convert": "P1D"}))
        store.dispatch(UpdateFunnel({"binding_key": {"dimension": "Events.userId"}}))

        funnel = store.state.funnel
        assert [s.name for s in funnel.steps] == ["Step 1", "Purchase"]
        assert all(s.cube == "Events" for s in funnel.steps)
        assert funnel.steps[1].time_to_convert == "P1D"
        assert funnel.binding_key.dimension == "Events.userId"

    def test_funnel_cube_change_resets_binding(self, store: QueryStateStore):
        store.dispatch(UpdateFunnel({"binding_key": {"dimension": "Events.userId"}}))
        store.dispatch(SetFunnelCube("Orders"))
        assert store.state.funnel.binding_key is None

    def test_flow_depth_clamped(self, store: QueryStateStore):
        store.dispatch(SetFlowSteps(steps_before=-1, steps_after=12))
        assert store.state.flow.steps_before == 0
        assert store.state.flow.steps_after == 5

    def test_retention_periods_clamped(self, store: QueryStateStore):
        store.dispatch(SetRetentionPeriods(100))
        assert store.state.retention.periods == 52
        store.dispatch(SetRetentionPeriods(0))
        assert store.state.retention.periods == 1

    def test_chart_type_per_analysis_type(self, store: QueryStateStore):
        """Each analysis type remembers its own chart type."""
        store.dispatch(SetChartType("table"))
        store.dispatch(SetAnalysisType(AnalysisType.FLOW))
        assert store.state.chart_type == "sankey"
        store.dispatch(SetAnalysisType(AnalysisType.QUERY))
        assert store.state.chart_type == "table"


class TestSubscribe:
    def test_listener_gets_state_and_action(self, store: QueryStateStore):
        seen = []
        unsubscribe = store.subscribe(lambda state, action: seen.append(action))

        store.dispatch(AddMetric("Orders.count"))
        unsubscribe()
        store.dispatch(AddMetric("Orders.totalAmount"))

        assert len(seen) == 1
        assert isinstance(seen[0], AddMetric)

    def test_no_op_not_notified(self, store: QueryStateStore):
        """An action that changes nothing doesn't wake listeners."""
        store.dispatch(AddBreakdown("Orders.createdAt", is_time_dimension=True))
        seen = []
        store.subscribe(lambda state, action: seen.append(action))

        store.dispatch(AddBreakdown("Orders.updatedAt", is_time_dimension=True))
        assert seen == []

    def test_reset(self, store: QueryStateStore):
        store.dispatch(AddMetric("Orders.count"))
        store.dispatch(ResetState())
        assert store.state.active_query.metrics == []
