"""Models for drill-down interaction."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from queryforge.models.query import CompiledQuery, Filter


class DrillOptionType(str, Enum):
    DRILL_DOWN = "drillDown"
    DRILL_UP = "drillUp"
    DETAILS = "details"


class DataPointClick(BaseModel):
    """A click on a chart data point, as reported by the renderer."""

    data_point: dict[str, Any] = Field(default_factory=dict)
    clicked_field: str  # usually the measure behind the clicked series
    x_value: Any = None
    position: tuple[float, float] = (0, 0)


class DrillOption(BaseModel):
    """One entry in the drill menu.

    time options carry target_granularity, hierarchy and details options
    carry target_dimension.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    type: DrillOptionType
    icon: str | None = None  # time, hierarchy or table
    hierarchy: str | None = None
    target_granularity: str | None = None
    target_dimension: str | None = None
    measure: str | None = None


class DrillPathEntry(BaseModel):
    """One breadcrumb in the drill path, with the query it produced."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    query: CompiledQuery
    filters: list[Filter] = Field(default_factory=list)
    granularity: str | None = None
    dimension: str | None = None
    hierarchy: str | None = None
    clicked_value: Any = None
    chart_config: dict[str, Any] | None = None


class DrillResult(BaseModel):
    query: CompiledQuery
    path_entry: DrillPathEntry
    chart_config: dict[str, Any] | None = None
