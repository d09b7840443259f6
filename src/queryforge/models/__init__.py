"""Pydantic models for queryforge."""

from queryforge.models.drill import (
    DataPointClick,
    DrillOption,
    DrillOptionType,
    DrillPathEntry,
    DrillResult,
)
from queryforge.models.meta import CubeMeta, MetaCube, MetaHierarchy, MetaMember
from queryforge.models.modes import (
    BindingKey,
    BindingKeyMapping,
    DateRange,
    FlowQuery,
    FlowStartingStep,
    FlowState,
    FunnelQuery,
    FunnelState,
    FunnelStepState,
    ModeQuery,
    RetentionQuery,
    RetentionState,
)
from queryforge.models.query import (
    CompiledQuery,
    Filter,
    GroupFilter,
    MergeStrategy,
    MultiQueryConfig,
    ResultSet,
    SimpleFilter,
    TimeDimension,
    ValidationIssue,
    ValidationResult,
)
from queryforge.models.state import (
    AnalysisState,
    AnalysisType,
    BreakdownItem,
    MetricItem,
    QueryState,
)

__all__ = [
    "AnalysisState",
    "AnalysisType",
    "BindingKey",
    "BindingKeyMapping",
    "BreakdownItem",
    "CompiledQuery",
    "CubeMeta",
    "DataPointClick",
    "DateRange",
    "DrillOption",
    "DrillOptionType",
    "DrillPathEntry",
    "DrillResult",
    "Filter",
    "FlowQuery",
    "FlowStartingStep",
    "FlowState",
    "FunnelQuery",
    "FunnelState",
    "FunnelStepState",
    "GroupFilter",
    "MergeStrategy",
    "MetaCube",
    "MetaHierarchy",
    "MetaMember",
    "MetricItem",
    "ModeQuery",
    "MultiQueryConfig",
    "QueryState",
    "ResultSet",
    "RetentionQuery",
    "RetentionState",
    "SimpleFilter",
    "TimeDimension",
    "ValidationIssue",
    "ValidationResult",
]
