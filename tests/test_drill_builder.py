"""Tests for drill option and drill query construction."""

import pytest

from queryforge.compiler.drill import (
    DETAILS_ROW_LIMIT,
    build_drill_options,
    build_drill_query,
    date_range_for_period,
    get_current_granularity,
    is_drill_enabled,
)
from queryforge.errors import DrillError
from queryforge.models import (
    CompiledQuery,
    CubeMeta,
    DataPointClick,
    DrillOption,
    DrillOptionType,
    SimpleFilter,
    TimeDimension,
)


@pytest.fixture
def monthly_query() -> CompiledQuery:
    return CompiledQuery(
        measures=["Orders.count"],
        time_dimensions=[TimeDimension(dimension="Orders.createdAt", granularity="month")],
    )


@pytest.fixture
def country_query() -> CompiledQuery:
    return CompiledQuery(measures=["Orders.totalAmount"], dimensions=["Orders.country"])


def _click(x_value, field: str = "Orders.count") -> DataPointClick:
    return DataPointClick(clicked_field=field, x_value=x_value, data_point={field: 1})


def _option(options: list[DrillOption], option_id: str) -> DrillOption:
    return next(o for o in options if o.id == option_id)


class TestDrillOptions:
    def test_time_options(self, monthly_query: CompiledQuery, sample_meta: CubeMeta):
        """Finer buckets to drill into, coarser ones to roll up to."""
        options = build_drill_options(_click("2024-03-01"), monthly_query, sample_meta)
        time_ids = [o.id for o in options if o.icon == "time"]

        assert time_ids == ["time-down-week", "time-down-day", "time-up-quarter", "time-up-year"]

    def test_details_from_drill_members(self, monthly_query: CompiledQuery, sample_meta: CubeMeta):
        """Measures with drill members offer a details option per member."""
        options = build_drill_options(_click("2024-03-01"), monthly_query, sample_meta)
        details = [o for o in options if o.type == DrillOptionType.DETAILS]

        assert [o.target_dimension for o in details] == ["Orders.status", "Orders.createdAt"]
        assert details[0].label == "Show by Status"

    def test_no_granularity_offers_all(self, sample_meta: CubeMeta):
        query = CompiledQuery(
            measures=["Orders.totalAmount"],
            time_dimensions=[TimeDimension(dimension="Orders.createdAt")],
        )
        options = build_drill_options(_click(None, "Orders.totalAmount"), query, sample_meta)
        assert [o.target_granularity for o in options] == [
            "year",
            "quarter",
            "month",
            "week",
            "day",
        ]

    def test_hierarchy_options(self, country_query: CompiledQuery, sample_meta: CubeMeta):
        click = _click("US", "Orders.totalAmount")
        options = build_drill_options(click, country_query, sample_meta)
        assert [o.id for o in options] == ["hierarchy-down-location-Orders.city"]

    def test_no_meta_no_options(self, monthly_query: CompiledQuery):
        assert build_drill_options(_click("2024-03-01"), monthly_query, None) == []


class TestDrillQuery:
    def test_time_drill_down_narrows_range(self, monthly_query, sample_meta):
        """Drilling into a month restricts the range to that month."""
        click = _click("2024-02-01T00:00:00.000")
        options = build_drill_options(click, monthly_query, sample_meta)

        option = _option(options, "time-down-week")
        result = build_drill_query(option, click, monthly_query, sample_meta)

        time_dim = result.query.time_dimensions[0]
        assert time_dim.granularity == "week"
        assert time_dim.date_range == ["2024-02-01", "2024-02-29"]
        assert result.path_entry.granularity == "week"
        assert result.query.measures == ["Orders.count"]

    def test_time_roll_up_keeps_range(self, sample_meta: CubeMeta):
        query = CompiledQuery(
            measures=["Orders.count"],
            time_dimensions=[
                TimeDimension(
                    dimension="Orders.createdAt",
                    granularity="day",
                    date_range=["2024-01-01", "2024-01-31"],
                )
            ],
        )
        click = _click("2024-01-05")
        options = build_drill_options(click, query, sample_meta)

        result = build_drill_query(_option(options, "time-up-month"), click, query, sample_meta)

        assert result.query.time_dimensions[0].granularity == "month"
        assert result.query.time_dimensions[0].date_range == ["2024-01-01", "2024-01-31"]

    def test_hierarchy_drill_down(self, country_query: CompiledQuery, sample_meta: CubeMeta):
        """Next level replaces the current one, filtered to the clicked value."""
        click = _click("France", "Orders.totalAmount")
        (option,) = build_drill_options(click, country_query, sample_meta)

        result = build_drill_query(option, click, country_query, sample_meta)

        assert result.query.dimensions == ["Orders.city"]
        assert result.query.filters == [
            SimpleFilter(member="Orders.country", operator="equals", values=["France"])
        ]
        assert result.path_entry.dimension == "Orders.city"

    def test_hierarchy_roll_up_drops_finer_filters(self, sample_meta: CubeMeta):
        query = CompiledQuery(
            measures=["Orders.totalAmount"],
            dimensions=["Orders.city"],
            filters=[SimpleFilter(member="Orders.city", operator="equals", values=["Paris"])],
        )
        click = _click("Paris", "Orders.totalAmount")
        (option,) = build_drill_options(click, query, sample_meta)

        result = build_drill_query(option, click, query, sample_meta)

        assert option.type == DrillOptionType.DRILL_UP
        assert result.query.dimensions == ["Orders.country"]
        assert result.query.filters is None

    def test_details(self, monthly_query: CompiledQuery, sample_meta: CubeMeta):
        """Details swaps in the drill member, keeps time context and limits rows."""
        click = _click("2024-03-01")
        options = build_drill_options(click, monthly_query, sample_meta)

        option = _option(options, "details-Orders.count-Orders.status")
        result = build_drill_query(option, click, monthly_query, sample_meta)

        assert result.query.measures == ["Orders.count"]
        assert result.query.dimensions == ["Orders.status"]
        assert result.query.time_dimensions == monthly_query.time_dimensions
        assert result.query.limit == DETAILS_ROW_LIMIT
        assert result.query.filters[-1].values == ["2024-03-01"]
        assert result.chart_config == {"xAxis": ["Orders.status"], "yAxis": ["Orders.count"]}

    def test_details_without_target_fails(self, monthly_query, sample_meta):
        option = DrillOption(
            id="details-broken",
            label="Broken",
            type=DrillOptionType.DETAILS,
            measure="Orders.count",
        )
        with pytest.raises(DrillError):
            build_drill_query(option, _click("2024-03-01"), monthly_query, sample_meta)


class TestHelpers:
    def test_current_granularity(self, monthly_query: CompiledQuery):
        assert get_current_granularity(monthly_query) == "month"
        assert get_current_granularity(CompiledQuery(measures=["Orders.count"])) is None

    def test_is_drill_enabled(self, monthly_query: CompiledQuery, sample_meta: CubeMeta):
        assert is_drill_enabled(monthly_query, sample_meta)
        assert not is_drill_enabled(monthly_query, None)
        assert not is_drill_enabled(CompiledQuery(measures=["Orders.totalAmount"]), sample_meta)
        assert is_drill_enabled(CompiledQuery(measures=["Orders.count"]), sample_meta)

    @pytest.mark.parametrize(
        "value,granularity,expected",
        [
            ("2024-05-10", "year", ["2024-01-01", "2024-12-31"]),
            ("2024-05-10", "quarter", ["2024-04-01", "2024-06-30"]),
            ("2024-02", "month", ["2024-02-01", "2024-02-29"]),
            ("2024-03-06", "week", ["2024-03-04", "2024-03-10"]),
            ("2024-03-06T00:00:00.000", "day", ["2024-03-06", "2024-03-06"]),
            ("Q1 2024", "quarter", ["Q1 2024", "Q1 2024"]),
        ],
    )
    def test_date_range_for_period(self, value, granularity, expected):
        assert date_range_for_period(value, granularity) == expected
