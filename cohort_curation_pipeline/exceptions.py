"""Custom exceptions for the cohort curation pipeline."""

from typing import Dict, Any, Optional


class CohortPipelineError(Exception):
    """Base exception for all cohort curation pipeline errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ConfigurationError(CohortPipelineError):
    """Raised when configuration or call parameters are invalid."""
    pass


class DataRetrievalError(CohortPipelineError):
    """Raised when no configured source could supply data for an asset."""
    pass


class SourceUnavailableError(DataRetrievalError):
    """Raised when a single source cannot be read.

    The assembler recovers from this by skipping the source.
    """
    pass


class ValidationError(CohortPipelineError):
    """Raised when a table violates a structural invariant."""
    pass


class DatabaseError(CohortPipelineError):
    """Raised when database operations fail."""
    pass
