"""Base classes shared by the pipeline stages and validators."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Sequence
import pandas as pd
from ..exceptions import ValidationError
from ..logging_config import get_logger


class BaseStage(ABC):
    """Abstract base class for all pipeline stages.

    A stage receives the loaded configuration and an optional reporter.
    Quality reports go to the reporter; frames passed in are never modified.
    """

    #: Label used in "missing columns" errors
    table_label = "Input table"

    def __init__(self, config: Optional[Dict[str, Any]] = None, reporter: Optional[Any] = None) -> None:
        # Imported here to avoid a cycle between models and reporting
        from ..reporting.reporter import NullReporter

        self.config = config or {}
        self.reporter = reporter if reporter is not None else NullReporter()
        self.logger = get_logger(self.__class__.__name__)
        self._validate_config()

    def _validate_config(self) -> None:
        """Check stage-specific configuration.

        Raises:
            ConfigurationError: If configuration is invalid
        """

    def _emit(self, report: Any) -> None:
        self.reporter.emit(report)

    def _require_columns(self, data: pd.DataFrame, columns: Sequence[str]) -> None:
        """Raise ValidationError naming every required column that is absent."""
        missing = [c for c in columns if c not in data.columns]
        if missing:
            raise ValidationError(
                f"{self.table_label} is missing columns: {missing}",
                context={"stage": self.__class__.__name__, "missing_columns": missing}
            )

    def _log_stage_stats(self, data: pd.DataFrame, data_type: str) -> None:
        """Log the size of a produced table.

        Args:
            data: Produced DataFrame
            data_type: Description used in the log line, e.g. "demographics"
        """
        n_patients = data['patient_id'].nunique() if 'patient_id' in data.columns else 0
        self.logger.info(
            f"Produced {len(data)} {data_type} rows for {n_patients} patients "
            f"({len(data.columns)} columns)"
        )
        if self.logger.isEnabledFor(logging.DEBUG):
            memory_mb = data.memory_usage(deep=True).sum() / 1024 / 1024
            self.logger.debug(f"{data_type} table uses {memory_mb:.2f} MB")


class BaseValidator(ABC):
    """Abstract base class for table validators.

    Errors and warnings are collected rather than raised; callers decide
    whether a failed validation aborts the run.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        self.config = config or {}
        self.logger = get_logger(self.__class__.__name__)
        self.validation_errors: List[str] = []
        self.validation_warnings: List[str] = []

    @abstractmethod
    def validate(self, data: Dict[str, pd.DataFrame]) -> bool:
        """Validate a set of named tables.

        Args:
            data: Dictionary of table name to DataFrame

        Returns:
            True if no errors were found
        """

    def add_error(self, message: str) -> None:
        self.validation_errors.append(message)
        self.logger.error(f"Validation error: {message}")

    def add_warning(self, message: str) -> None:
        self.validation_warnings.append(message)
        self.logger.warning(f"Validation warning: {message}")

    def clear_results(self) -> None:
        self.validation_errors.clear()
        self.validation_warnings.clear()

    @property
    def has_errors(self) -> bool:
        return bool(self.validation_errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.validation_warnings)
