"""Shared helpers."""

from .errors import retry_on_failure, ErrorContext, log_performance
from .temporal import (
    DAYS_PER_YEAR,
    LookbackWindow,
    FollowUpWindow,
    to_timestamp,
    to_date_series,
    days_between,
    age_in_years,
)

__all__ = [
    "retry_on_failure",
    "ErrorContext",
    "log_performance",
    "DAYS_PER_YEAR",
    "LookbackWindow",
    "FollowUpWindow",
    "to_timestamp",
    "to_date_series",
    "days_between",
    "age_in_years",
]
