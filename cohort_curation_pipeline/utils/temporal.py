"""Date arithmetic and temporal windows relative to an index date."""

import logging
import numbers
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional, Union
import pandas as pd
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25

DateLike = Union[str, date, datetime, pd.Timestamp]


def to_timestamp(value: DateLike, field_name: str = "date") -> pd.Timestamp:
    """Convert a scalar date-like value to a midnight Timestamp.

    Raises:
        ConfigurationError: If the value cannot be parsed as a date
    """
    try:
        timestamp = pd.Timestamp(value)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid {field_name}: {value!r}", context={"error": str(e)})
    if pd.isna(timestamp):
        raise ConfigurationError(f"Invalid {field_name}: {value!r}")
    return timestamp.normalize()


def to_date_series(values: pd.Series) -> pd.Series:
    """Parse a column to datetime64 at day resolution; unparseable values become NaT."""
    parsed = pd.to_datetime(values, errors='coerce')
    if getattr(parsed.dt, 'tz', None) is not None:
        parsed = parsed.dt.tz_localize(None)
    return parsed.dt.normalize()


def days_between(later: pd.Series, earlier: pd.Series) -> pd.Series:
    """Signed whole days from `earlier` to `later` as a nullable integer series."""
    return (later - earlier).dt.days.astype('Int64')


def age_in_years(date_of_birth: pd.Series, index_date: pd.Series) -> pd.Series:
    """Age at index date in fractional years: elapsed days / 365.25."""
    return (index_date - date_of_birth).dt.days / DAYS_PER_YEAR


def _check_non_negative_int(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ConfigurationError(
            f"{name} must be a non-negative number of whole days, got {value!r}",
            context={name: value}
        )
    if value < 0:
        raise ConfigurationError(
            f"{name} must be a non-negative number of whole days, got {value}",
            context={name: value}
        )


@dataclass(frozen=True)
class LookbackWindow:
    """Window of days before the index date used for covariates.

    An event is kept when ``days_from_index <= -days_before_end`` and, if a
    start is given, ``days_from_index >= -days_before_start``. A start of
    None means unbounded lookback.
    """

    days_before_start: Optional[int] = None
    days_before_end: int = 0

    def __post_init__(self) -> None:
        _check_non_negative_int(self.days_before_end, "days_before_end")
        if self.days_before_start is not None:
            _check_non_negative_int(self.days_before_start, "days_before_start")
            if self.days_before_end >= self.days_before_start:
                raise ConfigurationError(
                    f"days_before_end must be < days_before_start "
                    f"(got end={self.days_before_end}, start={self.days_before_start})",
                    context={
                        "days_before_start": self.days_before_start,
                        "days_before_end": self.days_before_end,
                    }
                )

    def contains(self, days_from_index: pd.Series) -> pd.Series:
        mask = days_from_index <= -self.days_before_end
        if self.days_before_start is not None:
            mask &= days_from_index >= -self.days_before_start
        return mask.fillna(False).astype(bool)

    def describe(self) -> str:
        start = "any time" if self.days_before_start is None else f"{self.days_before_start} days"
        return f"from {start} before index to {self.days_before_end} days before index"


@dataclass(frozen=True)
class FollowUpWindow:
    """Window of days after the index date used for outcomes.

    An event is kept when ``days_from_index >= days_after_start`` and, if an
    end is given, ``days_from_index <= days_after_end``. An end of None means
    unbounded follow-up.
    """

    days_after_start: int = 0
    days_after_end: Optional[int] = None

    def __post_init__(self) -> None:
        _check_non_negative_int(self.days_after_start, "days_after_start")
        if self.days_after_end is not None:
            _check_non_negative_int(self.days_after_end, "days_after_end")
            if self.days_after_end < self.days_after_start:
                raise ConfigurationError(
                    f"days_after_end must be >= days_after_start "
                    f"(got start={self.days_after_start}, end={self.days_after_end})",
                    context={
                        "days_after_start": self.days_after_start,
                        "days_after_end": self.days_after_end,
                    }
                )

    def contains(self, days_from_index: pd.Series) -> pd.Series:
        mask = days_from_index >= self.days_after_start
        if self.days_after_end is not None:
            mask &= days_from_index <= self.days_after_end
        return mask.fillna(False).astype(bool)

    def describe(self) -> str:
        end = "end of follow-up" if self.days_after_end is None else f"{self.days_after_end} days after index"
        return f"from {self.days_after_start} days after index to {end}"
