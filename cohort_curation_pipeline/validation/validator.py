"""Structural checks on long-format, cohort and final analysis tables."""

from typing import Dict, Any, List, Optional
import numpy as np
import pandas as pd
from ..models.base import BaseValidator
from ..models.records import (
    PATIENT_ID,
    INDEX_DATE,
    AGE_AT_INDEX,
    SOURCE_NAME,
    SOURCE_PRIORITY,
)

COHORT = 'cohort'
DATASET = 'dataset'


class DatasetValidator(BaseValidator):
    """Validates pipeline tables for integrity and consistency.

    Tables are passed by name. ``cohort`` and ``dataset`` are checked as
    one-row-per-patient tables; any table carrying source metadata is checked
    as a long-format asset. Assets configured with ``kind: event`` may hold
    several rows per patient and source.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(config)
        self.validation_report: Dict[str, Any] = {}

    @property
    def event_assets(self) -> List[str]:
        """Names of the configured assets of kind ``event``."""
        assets = (self.config or {}).get('assets') or {}
        return [
            name for name, spec in assets.items()
            if isinstance(spec, dict) and spec.get('kind') == 'event'
        ]

    def validate(self, data: Dict[str, pd.DataFrame]) -> bool:
        """Validate every table in `data`.

        Args:
            data: Dictionary of table name to DataFrame

        Returns:
            True if validation passes (no errors)
        """
        self.clear_results()
        self.validation_report = {}
        self.logger.info(f"Validating {len(data)} tables")

        for table_name, df in data.items():
            if PATIENT_ID not in df.columns:
                self.add_error(f"Table {table_name} has no {PATIENT_ID} column")
                continue
            if SOURCE_NAME in df.columns:
                self.validate_long_format(df, table_name)
            if table_name in (COHORT, DATASET):
                self.validate_one_per_patient(df, table_name)

        if COHORT in data:
            self.validate_cohort(data[COHORT])
        if COHORT in data and DATASET in data:
            self.validate_dataset(data[DATASET], data[COHORT])

        total_errors = len(self.validation_errors)
        total_warnings = len(self.validation_warnings)
        self.logger.info(f"Validation complete: {total_errors} errors, {total_warnings} warnings")
        return total_errors == 0

    def validate_long_format(self, long_df: pd.DataFrame, asset_name: str) -> None:
        """Every row names its source and priority; attribute assets are unique per patient and source."""
        for column in (SOURCE_NAME, SOURCE_PRIORITY):
            if column not in long_df.columns:
                self.add_error(f"Long-format table {asset_name} has no {column} column")
                return
            n_missing = int(long_df[column].isna().sum())
            if n_missing:
                self.add_error(f"Long-format table {asset_name} has {n_missing} rows without {column}")

        if (long_df[SOURCE_PRIORITY].dropna() < 1).any():
            self.add_error(f"Long-format table {asset_name} has non-positive source priorities")

        if asset_name not in self.event_assets:
            duplicated = long_df.duplicated(subset=[PATIENT_ID, SOURCE_NAME])
            if duplicated.any():
                self.add_error(
                    f"Long-format table {asset_name} has {int(duplicated.sum())} repeated (patient, source) rows"
                )

        self.validation_report[f"{asset_name}_rows_per_source"] = long_df[SOURCE_NAME].value_counts().to_dict()

    def validate_one_per_patient(self, df: pd.DataFrame, table_name: str) -> None:
        duplicated = df[PATIENT_ID].duplicated()
        if duplicated.any():
            self.add_error(f"Table {table_name} has {int(duplicated.sum())} repeated patient ids")

    def validate_cohort(self, cohort: pd.DataFrame) -> None:
        """Every member has an index date and a finite age."""
        if INDEX_DATE not in cohort.columns or AGE_AT_INDEX not in cohort.columns:
            self.add_error(f"Cohort must have {INDEX_DATE} and {AGE_AT_INDEX} columns")
            return
        if cohort[INDEX_DATE].isna().any():
            self.add_error("Cohort has members without an index date")
        ages = pd.to_numeric(cohort[AGE_AT_INDEX], errors='coerce')
        if not np.isfinite(ages.to_numpy(dtype=float)).all():
            self.add_error("Cohort has members without a finite age at index")
        if cohort.empty:
            self.add_warning("Cohort is empty")

    def validate_dataset(self, dataset: pd.DataFrame, cohort: pd.DataFrame) -> None:
        """The final table keeps every cohort member exactly once and adds whole result triples."""
        if len(dataset) != len(cohort):
            self.add_error(f"Dataset has {len(dataset)} rows but the cohort has {len(cohort)}")
        if set(dataset[PATIENT_ID]) != set(cohort[PATIENT_ID]):
            self.add_error("Dataset patients differ from cohort patients")

        added = len(dataset.columns) - len(cohort.columns)
        if added < 0 or added % 3 != 0:
            self.add_error(f"Dataset adds {added} columns to the cohort; expected a multiple of 3")

        flag_columns = [c for c in dataset.columns if c.endswith('_covariate_flag') or c.endswith('_outcome_flag')]
        for column in flag_columns:
            if dataset[column].isna().any():
                self.add_error(f"Flag column {column} has missing values")
                continue
            prevalence = float(dataset[column].mean()) if len(dataset) else 0.0
            if prevalence in (0.0, 1.0) and len(dataset):
                self.add_warning(f"Flag column {column} is constant ({prevalence:.0%})")
        self.validation_report['flag_columns'] = flag_columns
