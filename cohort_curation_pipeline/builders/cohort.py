"""Demographics assembly and cohort eligibility filtering."""

from collections.abc import Mapping
from typing import Dict, Any, Optional, Union
import numpy as np
import pandas as pd
from ..exceptions import ConfigurationError, ValidationError
from ..models.base import BaseStage
from ..models.records import (
    CohortResult,
    PATIENT_ID,
    INDEX_DATE,
    AGE_AT_INDEX,
    DEMOGRAPHIC_COLUMNS,
)
from ..models.reports import CohortReport
from ..utils.temporal import to_timestamp, to_date_series, age_in_years

DATE_OF_BIRTH = DEMOGRAPHIC_COLUMNS['date_of_birth']
SEX_CODE = DEMOGRAPHIC_COLUMNS['sex']
ETHNICITY_CODE = DEMOGRAPHIC_COLUMNS['ethnicity']
LSOA_CODE = DEMOGRAPHIC_COLUMNS['lsoa']

IndexDateInput = Union[str, pd.Timestamp, pd.Series, pd.DataFrame, Mapping, list, tuple, np.ndarray]


def _is_known(values: pd.Series) -> pd.Series:
    """Non-null and not a blank string."""
    blank = values.map(lambda v: isinstance(v, str) and v.strip() == "")
    return values.notna() & ~blank


class CohortBuilder(BaseStage):
    """Combines resolved demographics and applies eligibility filters in a fixed order.

    Filter order: index date attached, age computed, missing date of birth
    or index date dropped, then min_age, max_age, known sex, known ethnicity
    and known LSOA. Each applied filter is recorded with its own exclusion
    count in the cohort report.
    """

    def combine_demographics(
        self,
        dob: pd.DataFrame,
        sex: pd.DataFrame,
        ethnicity: Optional[pd.DataFrame] = None,
        lsoa: Optional[pd.DataFrame] = None
    ) -> pd.DataFrame:
        """Left join demographics onto the date-of-birth table.

        Patients missing from `dob` are not part of the result even when
        other tables know them.

        Args:
            dob: Resolved table with patient_id and date_of_birth
            sex: Resolved table with patient_id and sex_code
            ethnicity: Optional resolved table with patient_id and ethnicity_code
            lsoa: Optional resolved table with patient_id and lsoa_code

        Returns:
            One row per patient in `dob`

        Raises:
            ValidationError: If a table lacks its column or repeats a patient
        """
        demographics = self._one_per_patient(dob, DATE_OF_BIRTH, 'date of birth')
        self.logger.info(f"Starting with {len(demographics)} patients from date of birth asset")

        joins = [(sex, SEX_CODE, 'sex'), (ethnicity, ETHNICITY_CODE, 'ethnicity'), (lsoa, LSOA_CODE, 'LSOA')]
        for table, column, label in joins:
            if table is None:
                continue
            demographics = demographics.merge(
                self._one_per_patient(table, column, label),
                on=PATIENT_ID,
                how='left',
                validate='one_to_one'
            )
            known = int(_is_known(demographics[column]).sum())
            self.logger.info(f"Added {label}: {known} patients with known {label}")

        self._log_stage_stats(demographics, "demographics")
        return demographics

    def _one_per_patient(self, table: pd.DataFrame, column: str, label: str) -> pd.DataFrame:
        missing = [c for c in (PATIENT_ID, column) if c not in table.columns]
        if missing:
            raise ValidationError(f"The {label} table is missing columns: {missing}")
        if table[PATIENT_ID].duplicated().any():
            raise ValidationError(
                f"The {label} table has more than one row per patient; resolve it first"
            )
        return table[[PATIENT_ID, column]]

    def generate_cohort(
        self,
        demographics: pd.DataFrame,
        index_date: IndexDateInput,
        min_age: Optional[float] = None,
        max_age: Optional[float] = None,
        require_known_sex: bool = True,
        require_known_ethnicity: bool = False,
        require_lsoa: bool = False
    ) -> CohortResult:
        """Attach index dates, compute age and apply eligibility filters.

        Args:
            demographics: Combined demographics, one row per patient
            index_date: A single date for everyone, or per-patient dates as a
                frame with patient_id and index_date, a Series or mapping
                keyed by patient_id, or a sequence aligned with the rows
            min_age: Inclusive lower age bound in years
            max_age: Inclusive upper age bound in years
            require_known_sex: Drop patients without a sex code
            require_known_ethnicity: Drop patients without an ethnicity code
            require_lsoa: Drop patients without an LSOA code

        Returns:
            CohortResult with the eligible members and the exclusion report

        Raises:
            ConfigurationError: On inconsistent age bounds, unusable index
                dates or missing filter columns
        """
        if min_age is not None and max_age is not None and min_age > max_age:
            raise ConfigurationError(f"min_age ({min_age}) must not exceed max_age ({max_age})")
        if DATE_OF_BIRTH not in demographics.columns or PATIENT_ID not in demographics.columns:
            raise ConfigurationError("demographics must have patient_id and date_of_birth columns")

        required_columns = {
            SEX_CODE: require_known_sex,
            ETHNICITY_CODE: require_known_ethnicity,
            LSOA_CODE: require_lsoa,
        }
        for column, required in required_columns.items():
            if required and column not in demographics.columns:
                raise ConfigurationError(f"Filter on {column} requested but demographics has no {column} column")

        report = CohortReport(
            initial_count=len(demographics),
            parameters={
                'index_date': index_date if not isinstance(index_date, (pd.DataFrame, pd.Series, Mapping, list, tuple, np.ndarray))
                else 'per-patient',
                'min_age': min_age,
                'max_age': max_age,
                'require_known_sex': require_known_sex,
                'require_known_ethnicity': require_known_ethnicity,
                'require_lsoa': require_lsoa,
            }
        )
        self.logger.info(f"Generating cohort from {len(demographics)} patients")

        cohort = demographics.drop(columns=[INDEX_DATE, AGE_AT_INDEX], errors='ignore')
        cohort = self._attach_index_date(cohort, index_date)
        cohort[DATE_OF_BIRTH] = to_date_series(cohort[DATE_OF_BIRTH])
        cohort[AGE_AT_INDEX] = age_in_years(cohort[DATE_OF_BIRTH], cohort[INDEX_DATE])

        cohort = self._apply(cohort, cohort[DATE_OF_BIRTH].notna(), 'missing_date_of_birth', report)
        cohort = self._apply(cohort, cohort[INDEX_DATE].notna(), 'missing_index_date', report)
        if min_age is not None:
            cohort = self._apply(cohort, cohort[AGE_AT_INDEX] >= min_age, 'min_age', report)
        if max_age is not None:
            cohort = self._apply(cohort, cohort[AGE_AT_INDEX] <= max_age, 'max_age', report)
        if require_known_sex:
            cohort = self._apply(cohort, _is_known(cohort[SEX_CODE]), 'unknown_sex', report)
        if require_known_ethnicity:
            cohort = self._apply(cohort, _is_known(cohort[ETHNICITY_CODE]), 'unknown_ethnicity', report)
        if require_lsoa:
            cohort = self._apply(cohort, _is_known(cohort[LSOA_CODE]), 'missing_lsoa', report)

        cohort = cohort.reset_index(drop=True)
        self.logger.info(f"Final cohort: {len(cohort)} patients ({report.total_excluded} excluded)")
        if not cohort.empty:
            self.logger.info(
                f"Age range: {cohort[AGE_AT_INDEX].min():.1f} - {cohort[AGE_AT_INDEX].max():.1f} years, "
                f"mean {cohort[AGE_AT_INDEX].mean():.1f}"
            )
        self._emit(report)
        return CohortResult(members=cohort, report=report)

    def _apply(self, cohort: pd.DataFrame, keep: pd.Series, step: str, report: CohortReport) -> pd.DataFrame:
        before = len(cohort)
        filtered = cohort[keep.fillna(False).astype(bool)]
        report.add_step(step, before, len(filtered))
        self.logger.info(f"Excluded {before - len(filtered)} patients at step '{step}'")
        return filtered

    def _attach_index_date(self, cohort: pd.DataFrame, index_date: IndexDateInput) -> pd.DataFrame:
        """Add an index_date column from a scalar or per-patient input."""
        if isinstance(index_date, pd.DataFrame):
            if PATIENT_ID not in index_date.columns or INDEX_DATE not in index_date.columns:
                raise ConfigurationError("Per-patient index dates need patient_id and index_date columns")
            per_patient = index_date[[PATIENT_ID, INDEX_DATE]]
        elif isinstance(index_date, (pd.Series, Mapping)):
            series = pd.Series(index_date)
            per_patient = pd.DataFrame({PATIENT_ID: series.index, INDEX_DATE: series.to_numpy()})
        elif isinstance(index_date, (list, tuple, np.ndarray)):
            if len(index_date) != len(cohort):
                raise ConfigurationError(
                    f"index_date must be a single date or have one value per patient "
                    f"(got {len(index_date)} for {len(cohort)} patients)"
                )
            result = cohort.copy()
            result[INDEX_DATE] = to_date_series(pd.Series(list(index_date), index=cohort.index))
            return result
        else:
            result = cohort.copy()
            result[INDEX_DATE] = to_timestamp(index_date, INDEX_DATE)
            return result

        if per_patient[PATIENT_ID].duplicated().any():
            raise ConfigurationError("Per-patient index dates contain duplicate patient_id values")

        result = cohort.merge(per_patient, on=PATIENT_ID, how='left', validate='one_to_one')
        result.index = cohort.index
        result[INDEX_DATE] = to_date_series(result[INDEX_DATE])
        return result

    def summarize(self, cohort: pd.DataFrame) -> Dict[str, Any]:
        """Basic descriptive statistics of a cohort."""
        summary: Dict[str, Any] = {'n_patients': len(cohort)}
        if not cohort.empty and AGE_AT_INDEX in cohort.columns:
            summary['age_min'] = float(cohort[AGE_AT_INDEX].min())
            summary['age_max'] = float(cohort[AGE_AT_INDEX].max())
            summary['age_mean'] = float(cohort[AGE_AT_INDEX].mean())
        if SEX_CODE in cohort.columns:
            summary['sex_counts'] = cohort[SEX_CODE].value_counts(dropna=False).to_dict()
        return summary
