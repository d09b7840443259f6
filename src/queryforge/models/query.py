"""Pydantic models for compiled queries, filters and results.

these mirror the wire format of the query api closely - the compiler fills
them in and to_payload() hands back exactly what goes over http. snake_case
on the python side, camelCase aliases for the server.
"""

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    model_validator,
)


class MergeStrategy(str, Enum):
    """How results from multiple queries get combined.

    concat keeps each query as its own series, merge lines rows up on the
    breakdowns of the first query.
    """

    CONCAT = "concat"
    MERGE = "merge"


class SimpleFilter(BaseModel):
    """A single member/operator/values condition."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    member: str
    operator: str  # equals, notEquals, contains, set, inDateRange, gt...
    values: list[Any] = Field(default_factory=list)
    date_range: str | list[str] | None = Field(default=None, alias="dateRange")


class GroupFilter(BaseModel):
    """An and/or group of filters, can nest arbitrarily deep.

    the server wants {"and": [...]} but the builder keeps {"type": "and",
    "filters": [...]} around - both shapes are accepted here.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    logic: Literal["and", "or"] = Field(alias="type")
    filters: list["Filter"] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def accept_server_shape(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" not in data and "logic" not in data:
            for logic in ("and", "or"):
                if logic in data:
                    return {"type": logic, "filters": data[logic]}
        return data


def _filter_kind(value: Any) -> str | None:
    """Tell the two filter variants apart for pydantic's discriminator."""
    if isinstance(value, SimpleFilter):
        return "simple"
    if isinstance(value, GroupFilter):
        return "group"
    if isinstance(value, dict):
        if "member" in value:
            return "simple"
        if any(key in value for key in ("type", "logic", "and", "or")):
            return "group"
    return None


Filter = Annotated[
    Annotated[SimpleFilter, Tag("simple")] | Annotated[GroupFilter, Tag("group")],
    Discriminator(_filter_kind),
]

GroupFilter.model_rebuild()


class TimeDimension(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    dimension: str
    granularity: str | None = None
    date_range: str | list[str] | None = Field(default=None, alias="dateRange")


class CompiledQuery(BaseModel):
    """A flat query, ready for the load endpoint.

    every optional key stays None when there's nothing in it. the server treats
    an empty array differently from a missing key in a few places so we never
    send [] or {}.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    measures: list[str] | None = None
    dimensions: list[str] | None = None
    time_dimensions: list[TimeDimension] | None = Field(default=None, alias="timeDimensions")
    filters: list[Filter] | None = None
    order: dict[str, Literal["asc", "desc"]] | None = None
    limit: int | None = None
    offset: int | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire dict with absent keys dropped and group filters kept as-is."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_server_payload(self) -> dict[str, Any]:
        """Like to_payload() but with groups in the server's {"and": [...]} form."""
        # local import, filters module imports this one
        from queryforge.compiler.filters import to_server_format

        payload = self.to_payload()
        if self.filters:
            payload["filters"] = to_server_format(self.filters)
        return payload

    def has_content(self) -> bool:
        return bool(self.measures or self.dimensions or self.time_dimensions)


class MultiQueryConfig(BaseModel):
    """Everything needed to run and recombine several queries at once."""

    queries: list[CompiledQuery]
    merge_strategy: MergeStrategy = MergeStrategy.CONCAT
    merge_keys: list[str] | None = None
    query_labels: list[str] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    code: str  # machine readable, e.g. missing_binding_key
    message: str
    query_index: int | None = None


class ValidationResult(BaseModel):
    """Outcome of checking a configuration before anything hits the network.

    never raised - a half finished funnel is a perfectly normal state to be in.
    """

    is_valid: bool = True
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    def add_error(self, code: str, message: str, query_index: int | None = None) -> None:
        self.errors.append(ValidationIssue(code=code, message=message, query_index=query_index))
        self.is_valid = False

    def add_warning(self, code: str, message: str, query_index: int | None = None) -> None:
        self.warnings.append(ValidationIssue(code=code, message=message, query_index=query_index))

    @property
    def error_messages(self) -> list[str]:
        return [e.message for e in self.errors]


class ResultSet(BaseModel):
    """Rows plus annotation for one executed query.

    the api answers in two shapes depending on version/endpoint: flat
    {data, annotation} or nested {results: [{data, annotation}]}. from_response
    reads either one.
    """

    data: list[dict[str, Any]] = Field(default_factory=list)
    annotation: dict[str, Any] = Field(default_factory=dict)
    cache: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def from_response(cls, body: dict[str, Any]) -> "ResultSet":
        results = body.get("results")
        if isinstance(results, list) and results:
            first = results[0] or {}
            return cls(
                data=first.get("data") or body.get("data") or [],
                annotation=first.get("annotation") or body.get("annotation") or {},
                cache=first.get("cache") or body.get("cache"),
            )
        return cls(
            data=body.get("data") or [],
            annotation=body.get("annotation") or {},
            cache=body.get("cache"),
        )

    @property
    def columns(self) -> list[str]:
        # annotation order first, then anything extra the rows carry
        columns: list[str] = []
        for section in ("measures", "dimensions", "timeDimensions"):
            columns.extend(self.annotation.get(section, {}).keys())
        for row in self.data:
            for key in row:
                if key not in columns:
                    columns.append(key)
        return columns

    @property
    def row_count(self) -> int:
        return len(self.data)
