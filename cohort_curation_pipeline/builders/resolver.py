"""Collapse long-format tables to one row per patient and detect cross-source conflicts."""

from typing import List, Optional
import pandas as pd
from ..exceptions import ConfigurationError
from ..models.base import BaseStage
from ..models.records import PATIENT_ID, SOURCE_NAME, SOURCE_PRIORITY, SOURCE_METADATA_COLUMNS
from ..models.reports import ConflictReport

RESOLUTION_METHODS = ('priority', 'most_recent', 'consensus')

_INPUT_ORDER = '_input_order'


class PriorityResolver(BaseStage):
    """Selects the preferred source row for each patient.

    Rows are ranked by source_priority (lower wins), then source_name in
    ascending order, then their position in the input. The ranking is total,
    so the result is the same for the same input order.
    """

    table_label = "Long-format table"

    def get_highest_priority_per_patient(self, long_df: pd.DataFrame) -> pd.DataFrame:
        """Keep the single best-ranked row per patient.

        Args:
            long_df: Long-format table with patient_id and source_priority

        Returns:
            One row per distinct patient, ordered by patient_id, with the
            input's columns in the input's order
        """
        self._require_columns(long_df, [PATIENT_ID, SOURCE_PRIORITY])
        if long_df.empty:
            return long_df.copy()

        resolved = self._rank(long_df).drop_duplicates(subset=[PATIENT_ID], keep='first')
        resolved = resolved.sort_values(PATIENT_ID, kind='mergesort').reset_index(drop=True)

        self.logger.info(
            f"Resolved {len(long_df)} long-format rows to {len(resolved)} patients"
        )
        return resolved[list(long_df.columns)]

    def check_conflicts(self, long_df: pd.DataFrame, asset_name: str, value_column: str) -> Optional[pd.DataFrame]:
        """Find patients whose sources disagree on a value.

        Null values are ignored: a patient conflicts only when at least two
        distinct non-null values are present.

        Args:
            long_df: Long-format table
            asset_name: Asset name used in the report
            value_column: Column to compare across sources

        Returns:
            A frame with patient_id, n_distinct_values, distinct_values and
            sources, or None when no patient has conflicting values
        """
        self._require_columns(long_df, [PATIENT_ID, value_column])

        known = long_df[long_df[value_column].notna()]
        n_patients = int(long_df[PATIENT_ID].nunique())

        distinct_counts = known.groupby(PATIENT_ID)[value_column].nunique()
        conflicting_ids = distinct_counts[distinct_counts > 1].index

        self._emit(ConflictReport(
            asset_name=asset_name,
            value_column=value_column,
            n_patients=n_patients,
            n_conflicting=len(conflicting_ids),
        ))

        if len(conflicting_ids) == 0:
            self.logger.info(f"No conflicts found in {asset_name}.{value_column}")
            return None

        self.logger.warning(
            f"{len(conflicting_ids)} of {n_patients} patients have conflicting "
            f"{asset_name}.{value_column} values"
        )

        conflicting = known[known[PATIENT_ID].isin(conflicting_ids)]
        grouped = conflicting.groupby(PATIENT_ID, sort=True)
        result = pd.DataFrame({
            'n_distinct_values': grouped[value_column].nunique(),
            'distinct_values': grouped[value_column].agg(lambda s: ", ".join(sorted(set(map(str, s))))),
        })
        if SOURCE_NAME in conflicting.columns:
            result['sources'] = grouped[SOURCE_NAME].agg(lambda s: ", ".join(dict.fromkeys(map(str, s))))
        return result.rename_axis(PATIENT_ID).reset_index()

    def resolve_conflicts(
        self,
        long_df: pd.DataFrame,
        method: str = 'priority',
        value_column: Optional[str] = None,
        date_column: str = 'record_date'
    ) -> pd.DataFrame:
        """Resolve multi-source rows with a named strategy.

        Args:
            long_df: Long-format table
            method: 'priority' keeps the best-ranked row; 'most_recent'
                keeps the latest date_column row, falling back to rank on
                ties; 'consensus' keeps the best-ranked row and adds a
                boolean conflict_flag column
            value_column: Column compared by 'consensus'; inferred when the
                table has exactly one value column
            date_column: Column used by 'most_recent'

        Raises:
            ConfigurationError: On an unknown method or missing column
        """
        if method not in RESOLUTION_METHODS:
            raise ConfigurationError(
                f"Unknown resolution method '{method}', expected one of {RESOLUTION_METHODS}"
            )
        self._require_columns(long_df, [PATIENT_ID])
        if long_df.empty:
            return long_df.copy()

        if method == 'priority':
            ranked = self._rank(long_df)

        elif method == 'most_recent':
            if date_column not in long_df.columns:
                raise ConfigurationError(f"most_recent resolution needs a '{date_column}' column")
            ranked = self._rank(long_df)
            ranked = ranked.assign(_date=pd.to_datetime(ranked[date_column], errors='coerce'))
            ranked = ranked.sort_values(
                [PATIENT_ID, '_date'], ascending=[True, False], kind='mergesort', na_position='last'
            ).drop(columns='_date')

        else:
            value_column = value_column or self._infer_value_column(long_df)
            ranked = self._rank(long_df)
            distinct = ranked.groupby(PATIENT_ID)[value_column].transform('nunique')
            ranked = ranked.assign(conflict_flag=distinct > 1)

        resolved = ranked.drop_duplicates(subset=[PATIENT_ID], keep='first')
        resolved = resolved.sort_values(PATIENT_ID, kind='mergesort').reset_index(drop=True)
        columns = list(long_df.columns) + (['conflict_flag'] if method == 'consensus' else [])
        self.logger.info(f"Resolved {len(long_df)} rows to {len(resolved)} patients using '{method}'")
        return resolved[columns]

    def _rank(self, long_df: pd.DataFrame) -> pd.DataFrame:
        """Stable sort by patient, then priority, then source name, then input position."""
        keys = [PATIENT_ID]
        if SOURCE_PRIORITY in long_df.columns:
            keys.append(SOURCE_PRIORITY)
        if SOURCE_NAME in long_df.columns:
            keys.append(SOURCE_NAME)
        keys.append(_INPUT_ORDER)

        ranked = long_df.assign(**{_INPUT_ORDER: range(len(long_df))})
        return ranked.sort_values(keys, kind='mergesort', na_position='last').drop(columns=_INPUT_ORDER)

    @staticmethod
    def _infer_value_column(long_df: pd.DataFrame) -> str:
        candidates: List[str] = [
            c for c in long_df.columns if c != PATIENT_ID and c not in SOURCE_METADATA_COLUMNS
        ]
        if len(candidates) != 1:
            raise ConfigurationError(
                f"Cannot infer the value column for consensus resolution from {candidates}; pass value_column"
            )
        return candidates[0]
