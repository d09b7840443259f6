"""Exception hierarchy for queryforge.

everything raised on purpose inherits from QueryForgeError so callers (and the
cli) can catch one thing. validation problems are NOT exceptions - those come
back as ValidationResult objects since a half-built query is a normal state.
"""

from typing import Any


class QueryForgeError(Exception):
    """Base exception for queryforge."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class QueryExecutionError(QueryForgeError):
    """Raised when the query api rejects a request or can't be reached."""


class BatchQueryError(QueryForgeError):
    """Raised for a single failed position inside a batch response."""

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class BatchResultMissingError(BatchQueryError):
    """Raised when the batch response has fewer results than queued queries."""


class DrillError(QueryForgeError):
    """Raised when a drill query can't be built from the clicked option."""


class InvariantViolationError(QueryForgeError):
    """Raised in strict mode when an action would break a state invariant."""


class AnalysisFileError(QueryForgeError):
    """Raised when a yaml analysis document is malformed."""
