"""QueryForge - compile analysis builder state into queries and run them."""

from queryforge.config import Settings, get_settings
from queryforge.drill import DrillInteraction
from queryforge.errors import (
    AnalysisFileError,
    BatchQueryError,
    BatchResultMissingError,
    DrillError,
    InvariantViolationError,
    QueryExecutionError,
    QueryForgeError,
)
from queryforge.executor.batch import BatchCoordinator
from queryforge.executor.coordinator import ExecutionCoordinator, ExecutionState, plan_execution
from queryforge.executor.http_client import QueryClient
from queryforge.meta_cache import MetadataCache
from queryforge.parser.loader import load_analysis
from queryforge.store import QueryStateStore

__version__ = "0.1.0"

__all__ = [
    "AnalysisFileError",
    "BatchCoordinator",
    "BatchQueryError",
    "BatchResultMissingError",
    "DrillError",
    "DrillInteraction",
    "ExecutionCoordinator",
    "ExecutionState",
    "InvariantViolationError",
    "MetadataCache",
    "QueryClient",
    "QueryExecutionError",
    "QueryForgeError",
    "QueryStateStore",
    "Settings",
    "get_settings",
    "load_analysis",
    "plan_execution",
]
