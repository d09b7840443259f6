"""Pytest fixtures for QueryForge tests."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from queryforge.executor.http_client import QueryClient
from queryforge.models.meta import CubeMeta
from queryforge.store import QueryStateStore

API_URL = "http://cube.test/cubejs-api/v1"


@pytest.fixture
def sample_meta_dict() -> dict[str, Any]:
    """Raw /meta response with an Orders cube and an Events cube."""
    return {
        "cubes": [
            {
                "name": "Orders",
                "title": "Orders",
                "measures": [
                    {
                        "name": "Orders.count",
                        "title": "Order Count",
                        "type": "count",
                        "drillMembers": ["Orders.status", "Orders.createdAt"],
                    },
                    {"name": "Orders.totalAmount", "title": "Total Amount", "type": "sum"},
                ],
                "dimensions": [
                    {"name": "Orders.status", "title": "Status", "type": "string"},
                    {
                        "name": "Orders.createdAt",
                        "title": "Created At",
                        "type": "time",
                        "granularities": [
                            {"name": "year", "title": "Year"},
                            {"name": "quarter", "title": "Quarter"},
                            {"name": "month", "title": "Month"},
                            {"name": "week", "title": "Week"},
                            {"name": "day", "title": "Day"},
                        ],
                    },
                    {"name": "Orders.country", "title": "Country", "type": "string"},
                    {"name": "Orders.city", "title": "City", "type": "string"},
                ],
                "hierarchies": [
                    {"name": "location", "levels": ["Orders.country", "Orders.city"]},
                ],
            },
            {
                "name": "Events",
                "title": "Events",
                "measures": [{"name": "Events.count", "type": "count"}],
                "dimensions": [
                    {"name": "Events.userId", "type": "string"},
                    {"name": "Events.timestamp", "type": "time"},
                    {"name": "Events.eventType", "type": "string"},
                ],
            },
        ]
    }


@pytest.fixture
def sample_meta(sample_meta_dict: dict[str, Any]) -> CubeMeta:
    return CubeMeta.model_validate(sample_meta_dict)


@pytest.fixture
def store() -> QueryStateStore:
    """Strict store so invariant slips fail loudly in tests."""
    return QueryStateStore(strict=True)


@pytest.fixture
def make_client() -> Callable[..., QueryClient]:
    """Factory for a QueryClient backed by httpx.MockTransport."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> QueryClient:
        return QueryClient(API_URL, token="secret-token", transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def sample_analysis_yaml() -> str:
    """Two query tabs merged on the first tab's time breakdown."""
    return """
analysis_type: query
merge_strategy: merge
queries:
  - metrics:
      - Orders.count
    breakdowns:
      - field: Orders.createdAt
        time: true
        granularity: month
    filters:
      - member: Orders.status
        operator: equals
        values: [completed]
  - metrics:
      - field: Orders.totalAmount
        label: Revenue
"""


@pytest.fixture
def analysis_file(tmp_path: Path, sample_analysis_yaml: str) -> Path:
    path = tmp_path / "analysis.yaml"
    path.write_text(sample_analysis_yaml)
    return path


@pytest.fixture
def funnel_yaml() -> str:
    return """
analysis_type: funnel
funnel:
  cube: Events
  binding_key: Events.userId
  time_dimension: Events.timestamp
  steps:
    - name: Signup
      filters:
        - member: Events.eventType
          operator: equals
          values: [signup]
    - name: Purchase
      time_to_convert: P7D
      filters:
        - member: Events.eventType
          operator: equals
          values: [purchase]
"""


@pytest.fixture
def funnel_file(tmp_path: Path, funnel_yaml: str) -> Path:
    path = tmp_path / "funnel.yaml"
    path.write_text(funnel_yaml)
    return path
