#!/usr/bin/env python3
"""Unit tests for the final dataset combiner."""

import unittest
import pandas as pd
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cohort_curation_pipeline.builders.combiner import DatasetCombiner
from cohort_curation_pipeline.builders.events import TemporalEventSelector
from cohort_curation_pipeline.exceptions import ConfigurationError, ValidationError
from cohort_curation_pipeline.models.reports import CombineReport
from cohort_curation_pipeline.reporting import CollectingReporter


class TestDatasetCombiner(unittest.TestCase):
    """Test cases for DatasetCombiner class."""

    def setUp(self):
        """Set up test fixtures."""
        self.reporter = CollectingReporter()
        self.combiner = DatasetCombiner(reporter=self.reporter)
        selector = TemporalEventSelector()

        self.cohort = pd.DataFrame({
            'patient_id': ['P1', 'P2', 'P3', 'P4'],
            'date_of_birth': pd.to_datetime(['1950-05-15', '1960-01-01', '1970-01-01', '1980-01-01']),
            'sex_code': ['1', '2', '1', '2'],
            'index_date': pd.to_datetime(['2024-01-01'] * 4),
            'age_at_index': [73.6, 64.0, 54.0, 44.0],
        })
        lookup = pd.DataFrame({
            'code': ['E11', 'I63', 'I10'],
            'name': ['diabetes', 'stroke', 'hypertension'],
            'description': ['Type 2 diabetes', 'Cerebral infarction', 'Hypertension'],
            'terminology': ['ICD10', 'ICD10', 'ICD10'],
        })
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2', 'P2', 'P3'],
            'event_date': ['2022-03-15', '2020-01-01', '2024-06-01', '2024-03-01'],
            'code': ['E11', 'I10', 'I63', 'I63'],
        })

        self.covariates = selector.generate_multiple_covariates(
            events, self.cohort, lookup, ['diabetes', 'hypertension']
        )
        self.outcomes = selector.generate_multiple_outcomes(
            events, self.cohort, lookup, ['stroke'], days_after_end=365
        )

    def test_shape(self):
        dataset = self.combiner.combine(self.cohort, self.covariates, self.outcomes)

        self.assertEqual(len(dataset), len(self.cohort))
        self.assertEqual(len(dataset.columns), len(self.cohort.columns) + 3 * 3)
        self.assertEqual(dataset['patient_id'].tolist(), self.cohort['patient_id'].tolist())

    def test_columns_are_prefixed_with_label(self):
        dataset = self.combiner.combine(self.cohort, self.covariates, self.outcomes)

        for column in ('diabetes_covariate_flag', 'diabetes_covariate_date', 'diabetes_days_to_index',
                       'stroke_outcome_flag', 'stroke_outcome_date', 'stroke_days_from_index'):
            self.assertIn(column, dataset.columns)
        self.assertEqual(dataset['diabetes_covariate_flag'].tolist(), [True, False, False, False])
        self.assertEqual(dataset['hypertension_covariate_flag'].tolist(), [False, True, False, False])
        self.assertEqual(dataset['stroke_outcome_flag'].tolist(), [False, True, True, False])
        self.assertEqual(dataset['stroke_outcome_flag'].dtype, bool)

    def test_cohort_only(self):
        dataset = self.combiner.combine(self.cohort)
        pd.testing.assert_frame_equal(dataset, self.cohort)

    def test_report(self):
        self.combiner.combine(self.cohort, self.covariates, self.outcomes)
        report = self.reporter.last(CombineReport)

        self.assertIs(report, self.combiner.last_report)
        self.assertEqual(report.n_rows, 4)
        self.assertEqual(report.n_cohort_columns, 5)
        self.assertEqual(report.flag_prevalence['stroke_outcome_flag'], 50.0)
        self.assertEqual(report.flag_prevalence['diabetes_covariate_flag'], 25.0)

    def test_duplicate_labels_rejected(self):
        with self.assertRaises(ConfigurationError):
            self.combiner.combine(self.cohort, [self.covariates[0], self.covariates[0]])

    def test_kind_mismatch_rejected(self):
        with self.assertRaises(ConfigurationError):
            self.combiner.combine(self.cohort, covariates=self.outcomes)

    def test_duplicate_cohort_rows_rejected(self):
        cohort = pd.concat([self.cohort, self.cohort.iloc[[0]]], ignore_index=True)
        with self.assertRaises(ValidationError):
            self.combiner.combine(cohort, self.covariates)

    def test_column_clash_rejected(self):
        cohort = self.cohort.assign(diabetes_covariate_flag=False)
        with self.assertRaises(ConfigurationError):
            self.combiner.combine(cohort, self.covariates)


if __name__ == '__main__':
    unittest.main()
