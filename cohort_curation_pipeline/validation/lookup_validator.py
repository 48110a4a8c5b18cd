"""Code lookup table validation and code-set resolution."""

import logging
import pandas as pd
from typing import List, Set
from ..exceptions import ConfigurationError
from ..models.records import LOOKUP_COLUMNS

logger = logging.getLogger(__name__)


def validate_lookup_table(lookup: pd.DataFrame) -> None:
    """Check that a lookup table has the required columns.

    Args:
        lookup: Candidate lookup table

    Raises:
        ConfigurationError: If the table is not a DataFrame or lacks a required column
    """
    if not isinstance(lookup, pd.DataFrame):
        raise ConfigurationError("lookup_table must be a DataFrame")
    missing = [col for col in LOOKUP_COLUMNS if col not in lookup.columns]
    if missing:
        raise ConfigurationError(
            f"lookup_table must have columns: {', '.join(LOOKUP_COLUMNS)} (missing: {', '.join(missing)})",
            context={"missing_columns": missing}
        )


class LookupValidator:
    """Resolves lookup names to the code sets they define."""

    def __init__(self, lookup: pd.DataFrame):
        """Initialize the validator with a code lookup table.

        Args:
            lookup: DataFrame with code, name, description and terminology columns

        Raises:
            ConfigurationError: If required columns are missing
        """
        validate_lookup_table(lookup)
        self.lookup = lookup
        self.names: Set[str] = set(lookup['name'].dropna().astype(str))

        incomplete = lookup[LOOKUP_COLUMNS].isna().any(axis=1).sum()
        if incomplete:
            logger.warning(f"{incomplete} lookup rows have missing values in required columns")

        logger.info(f"LookupValidator initialized with {len(lookup)} codes across {len(self.names)} names")

    def has_name(self, name: str) -> bool:
        return name in self.names

    def codes_for(self, name: str) -> pd.DataFrame:
        """Return the distinct (code, terminology) pairs defined for a name.

        An unknown name yields an empty frame rather than an error.
        """
        rows = self.lookup.loc[self.lookup['name'] == name, ['code', 'terminology']]
        rows = rows.dropna(subset=['code']).astype({'code': str})
        rows['code'] = rows['code'].str.strip()
        return rows.drop_duplicates().reset_index(drop=True)

    def unknown_names(self, names: List[str]) -> List[str]:
        return [name for name in names if name not in self.names]
