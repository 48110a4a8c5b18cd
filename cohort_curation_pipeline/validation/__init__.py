"""Data validation modules."""

from .validator import DatasetValidator
from .lookup_validator import LookupValidator, validate_lookup_table

__all__ = ["DatasetValidator", "LookupValidator", "validate_lookup_table"]
