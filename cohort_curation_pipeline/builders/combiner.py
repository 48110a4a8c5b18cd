"""Joins the cohort with its covariate and outcome results into one analysis table."""

from typing import List, Optional, Sequence
import pandas as pd
from ..exceptions import ConfigurationError, ValidationError
from ..models.base import BaseStage
from ..models.records import EventResult, PATIENT_ID, INDEX_DATE, COVARIATE, OUTCOME
from ..models.reports import CombineReport


class DatasetCombiner(BaseStage):
    """Left joins every result onto the cohort, one row per cohort member."""

    last_report: Optional[CombineReport] = None

    def combine(
        self,
        cohort: pd.DataFrame,
        covariates: Sequence[EventResult] = (),
        outcomes: Sequence[EventResult] = ()
    ) -> pd.DataFrame:
        """Build the final analysis table.

        Each result contributes its three value columns prefixed with its
        label, e.g. ``diabetes_covariate_flag``. The result's own index_date
        is dropped.

        Args:
            cohort: Cohort members, one row per patient
            covariates: Covariate results
            outcomes: Outcome results

        Returns:
            Final analysis table with len(cohort) rows and
            len(cohort.columns) + 3 * (number of results) columns

        Raises:
            ConfigurationError: If two results of the same kind share a label
            ValidationError: If the joined table breaks the row or column count
        """
        if cohort[PATIENT_ID].duplicated().any():
            raise ValidationError("Cohort has more than one row per patient")

        for kind, results in ((COVARIATE, covariates), (OUTCOME, outcomes)):
            self._check_labels(kind, results)
            for result in results:
                if result.kind != kind:
                    raise ConfigurationError(
                        f"Result '{result.label}' is a {result.kind} but was passed as a {kind}"
                    )

        dataset = cohort.copy()
        flag_columns: List[str] = []

        for result in list(covariates) + list(outcomes):
            prefixed = result.data.drop(columns=[INDEX_DATE], errors='ignore')
            prefixed = prefixed.rename(
                columns={c: f"{result.label}_{c}" for c in prefixed.columns if c != PATIENT_ID}
            )
            clashes = [c for c in prefixed.columns if c != PATIENT_ID and c in dataset.columns]
            if clashes:
                raise ConfigurationError(f"Result '{result.label}' would overwrite columns {clashes}")

            dataset = dataset.merge(prefixed, on=PATIENT_ID, how='left', validate='one_to_one')
            flag_columns.append(f"{result.label}_{result.flag_column}")

        n_results = len(covariates) + len(outcomes)
        expected_columns = len(cohort.columns) + 3 * n_results
        if len(dataset) != len(cohort) or len(dataset.columns) != expected_columns:
            raise ValidationError(
                f"Combined dataset has shape {dataset.shape}, expected ({len(cohort)}, {expected_columns})"
            )

        for column in flag_columns:
            dataset[column] = dataset[column].fillna(False).astype(bool)

        report = CombineReport(
            n_rows=len(dataset),
            n_columns=len(dataset.columns),
            n_cohort_columns=len(cohort.columns),
            flag_prevalence={
                column: round(100.0 * dataset[column].mean(), 2) if len(dataset) else 0.0
                for column in flag_columns
            },
        )
        self.last_report = report
        self._emit(report)
        self._log_stage_stats(dataset, "final analysis")
        return dataset

    @staticmethod
    def _check_labels(kind: str, results: Sequence[EventResult]) -> None:
        labels = [r.label for r in results]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate {kind} labels: {duplicates}")
