"""Tests for the multi-query merge coordinator."""

from queryforge.compiler.multi_query import (
    QUERY_INDEX_KEY,
    QUERY_LABEL_KEY,
    build_all_queries,
    build_multi_query_config,
    get_merge_keys,
    is_multi_query_mode,
    merge_query_results,
    validate_multi_query_config,
)
from queryforge.models import (
    BreakdownItem,
    CompiledQuery,
    MergeStrategy,
    MetricItem,
    QueryState,
    ResultSet,
    TimeDimension,
)


def _state(measure: str | None = None, *breakdowns: str) -> QueryState:
    metrics = [MetricItem(id=f"m-{measure}", field=measure, label="A")] if measure else []
    return QueryState(
        metrics=metrics,
        breakdowns=[BreakdownItem(id=f"b-{b}", field=b) for b in breakdowns],
    )


def _monthly(measure: str, granularity: str = "month") -> CompiledQuery:
    return CompiledQuery(
        measures=[measure],
        time_dimensions=[TimeDimension(dimension="Orders.createdAt", granularity=granularity)],
    )


class TestMultiQueryMode:
    def test_needs_two_populated_states(self):
        """One populated tab next to empty ones is still single-query."""
        assert not is_multi_query_mode([_state("Orders.count")])
        assert not is_multi_query_mode([_state("Orders.count"), _state()])
        assert is_multi_query_mode([_state("Orders.count"), _state("Orders.totalAmount")])

    def test_breakdown_only_state_counts(self):
        """A tab with only a breakdown still counts as populated."""
        assert is_multi_query_mode([_state("Orders.count"), _state(None, "Orders.status")])


class TestBuildAllQueries:
    def test_concat_keeps_own_breakdowns(self):
        """Under concat every query keeps its own breakdown."""
        states = [_state("Orders.count", "Region"), _state("Orders.totalAmount", "Category")]
        queries = build_all_queries(states, MergeStrategy.CONCAT)

        assert queries[0].dimensions == ["Region"]
        assert queries[1].dimensions == ["Category"]

    def test_merge_shares_first_breakdowns(self):
        """Under merge query 2 uses the first query's breakdown."""
        states = [_state("Orders.count", "Region"), _state("Orders.totalAmount", "Category")]
        queries = build_all_queries(states, MergeStrategy.MERGE)

        assert queries[1].dimensions == ["Region"]
        # the second tab still remembers its own breakdown
        assert states[1].breakdowns[0].field == "Category"

    def test_merge_dimensions_identical_across_queries(self):
        """Every query after the first has exactly the first query's dimensions."""
        states = [
            _state("Orders.count", "Region", "Country"),
            _state("Orders.totalAmount"),
            _state("Orders.count", "Category"),
        ]
        queries = build_all_queries(states, MergeStrategy.MERGE)
        for query in queries[1:]:
            assert query.dimensions == queries[0].dimensions

    def test_empty(self):
        assert build_all_queries([]) == []


class TestMergeKeys:
    def test_only_under_merge(self):
        """Concat has no merge keys."""
        states = [_state("Orders.count", "Region"), _state("Orders.totalAmount")]
        assert get_merge_keys(states, MergeStrategy.CONCAT) is None
        assert get_merge_keys(states, MergeStrategy.MERGE) == ["Region"]

    def test_no_breakdowns_no_keys(self):
        """Merge without breakdowns on the first query gives None."""
        states = [_state("Orders.count"), _state("Orders.totalAmount")]
        assert get_merge_keys(states, MergeStrategy.MERGE) is None


class TestBuildMultiQueryConfig:
    def test_config(self):
        """Config carries queries, strategy, keys and Q labels."""
        states = [_state("Orders.count", "Region"), _state("Orders.totalAmount")]
        config = build_multi_query_config(states, MergeStrategy.MERGE)

        assert config is not None
        assert len(config.queries) == 2
        assert config.merge_strategy == MergeStrategy.MERGE
        assert config.merge_keys == ["Region"]
        assert config.query_labels == ["Q1", "Q2"]

    def test_single_query_returns_none(self):
        """Not multi-query mode, no config."""
        assert build_multi_query_config([_state("Orders.count"), _state()]) is None


class TestValidateMultiQueryConfig:
    def test_measure_collision_warns(self):
        """The same measure twice is only a warning."""
        result = validate_multi_query_config(
            [CompiledQuery(measures=["Orders.count"]), CompiledQuery(measures=["Orders.count"])],
            MergeStrategy.CONCAT,
        )
        assert result.is_valid
        assert [w.code for w in result.warnings] == ["measure_collision"]

    def test_granularity_mismatch_under_merge(self):
        """Merged queries must bucket time the same way."""
        result = validate_multi_query_config(
            [_monthly("Orders.count"), _monthly("Orders.totalAmount", "week")],
            MergeStrategy.MERGE,
        )
        assert not result.is_valid
        assert result.errors[0].code == "granularity_mismatch"
        assert result.errors[0].query_index == 1

    def test_granularity_mismatch_fine_under_concat(self):
        """Concat doesn't line rows up so granularities may differ."""
        result = validate_multi_query_config(
            [_monthly("Orders.count"), _monthly("Orders.totalAmount", "week")],
            MergeStrategy.CONCAT,
        )
        assert result.is_valid

    def test_missing_time_dimension_under_merge(self):
        result = validate_multi_query_config(
            [_monthly("Orders.count"), CompiledQuery(measures=["Orders.totalAmount"])],
            MergeStrategy.MERGE,
        )
        assert "missing_time_dimension" in [e.code for e in result.errors]

    def test_missing_merge_key(self):
        """Each query must carry every merge key."""
        result = validate_multi_query_config(
            [
                CompiledQuery(measures=["Orders.count"], dimensions=["Orders.status"]),
                CompiledQuery(measures=["Orders.totalAmount"]),
            ],
            MergeStrategy.MERGE,
            merge_keys=["Orders.status"],
        )
        assert [e.code for e in result.errors] == ["missing_merge_key"]

    def test_asymmetric_date_ranges_warn(self):
        q1 = CompiledQuery(
            measures=["Orders.count"],
            time_dimensions=[
                TimeDimension(dimension="Orders.createdAt", date_range="last 7 days")
            ],
        )
        q2 = CompiledQuery(
            measures=["Orders.totalAmount"],
            time_dimensions=[
                TimeDimension(dimension="Orders.createdAt", date_range="last 30 days")
            ],
        )
        result = validate_multi_query_config([q1, q2], MergeStrategy.CONCAT)
        assert "asymmetric_date_range" in [w.code for w in result.warnings]


class TestMergeQueryResults:
    def test_concat_tags_rows(self):
        """Concat appends rows tagged with query index and label."""
        results = [
            ResultSet(data=[{"Orders.count": 1}]),
            ResultSet(data=[{"Orders.totalAmount": 10}, {"Orders.totalAmount": 20}]),
        ]
        rows = merge_query_results(
            results, [], MergeStrategy.CONCAT, labels=["Q1", "Q2"]
        )

        assert len(rows) == 3
        assert rows[0][QUERY_INDEX_KEY] == 0
        assert rows[2][QUERY_LABEL_KEY] == "Q2"

    def test_concat_default_labels(self):
        results = [ResultSet(data=[{"a": 1}]), ResultSet(data=[{"b": 2}])]
        rows = merge_query_results(results, [], MergeStrategy.CONCAT)
        assert rows[1][QUERY_LABEL_KEY] == "Query 2"

    def test_merge_aligns_by_key(self):
        """Rows with the same key value end up in one row."""
        queries = [
            CompiledQuery(measures=["Orders.count"], dimensions=["Orders.status"]),
            CompiledQuery(measures=["Orders.totalAmount"], dimensions=["Orders.status"]),
        ]
        results = [
            ResultSet(
                data=[
                    {"Orders.status": "shipped", "Orders.count": 3},
                    {"Orders.status": "new", "Orders.count": 5},
                ]
            ),
            ResultSet(data=[{"Orders.status": "new", "Orders.totalAmount": 100}]),
        ]
        rows = merge_query_results(results, queries, MergeStrategy.MERGE, ["Orders.status"])

        assert rows == [
            {"Orders.status": "new", "Orders.count": 5, "Orders.totalAmount": 100},
            {"Orders.status": "shipped", "Orders.count": 3},
        ]

    def test_merge_first_measure_wins(self):
        """A measure in both queries keeps the first query's value."""
        queries = [
            CompiledQuery(measures=["Orders.count"], dimensions=["Orders.status"]),
            CompiledQuery(measures=["Orders.count"], dimensions=["Orders.status"]),
        ]
        results = [
            ResultSet(data=[{"Orders.status": "new", "Orders.count": 5}]),
            ResultSet(data=[{"Orders.status": "new", "Orders.count": 99}]),
        ]
        rows = merge_query_results(results, queries, MergeStrategy.MERGE, ["Orders.status"])
        assert rows[0]["Orders.count"] == 5

    def test_single_result_passthrough(self):
        rows = merge_query_results([ResultSet(data=[{"a": 1}])], [], MergeStrategy.MERGE, ["a"])
        assert rows == [{"a": 1}]
