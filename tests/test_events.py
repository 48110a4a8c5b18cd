#!/usr/bin/env python3
"""Unit tests for covariate and outcome generation."""

import unittest
import pandas as pd
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cohort_curation_pipeline.builders.events import TemporalEventSelector
from cohort_curation_pipeline.exceptions import ConfigurationError, ValidationError
from cohort_curation_pipeline.models.records import EventDefinition, COVARIATE, OUTCOME
from cohort_curation_pipeline.models.reports import EventQualityReport
from cohort_curation_pipeline.reporting import CollectingReporter


def make_lookup():
    return pd.DataFrame({
        'code': ['E11', 'E11.9', 'I63', 'C10'],
        'name': ['diabetes', 'diabetes', 'stroke', 'diabetes'],
        'description': ['Type 2 diabetes', 'Type 2 diabetes without complication',
                        'Cerebral infarction', 'Diabetes (Read)'],
        'terminology': ['ICD10', 'ICD10', 'ICD10', 'READ'],
    })


class TestCovariates(unittest.TestCase):
    """Test cases for covariate generation."""

    def setUp(self):
        """Set up test fixtures."""
        self.reporter = CollectingReporter()
        self.selector = TemporalEventSelector(reporter=self.reporter)
        self.lookup = make_lookup()
        self.cohort = pd.DataFrame({
            'patient_id': ['P1', 'P2', 'P3'],
            'index_date': pd.to_datetime(['2024-01-01'] * 3),
        })

    def test_earliest_event_before_index(self):
        """The earliest qualifying event is selected for 'min'."""
        events = pd.DataFrame({
            'patient_id': ['P1', 'P1'],
            'event_date': ['2022-03-15', '2023-07-22'],
            'code': ['E11', 'E11'],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')
        p1 = result.data.set_index('patient_id').loc['P1']

        self.assertTrue(p1['covariate_flag'])
        self.assertEqual(p1['covariate_date'], pd.Timestamp('2022-03-15'))
        self.assertEqual(p1['days_to_index'], -657)

    def test_output_has_one_row_per_cohort_member(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P1', 'P9'],
            'event_date': ['2022-03-15', '2023-07-22', '2020-01-01'],
            'code': ['E11', 'E11', 'E11'],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')

        self.assertEqual(result.data['patient_id'].tolist(), ['P1', 'P2', 'P3'])
        self.assertEqual(
            list(result.data.columns),
            ['patient_id', 'index_date', 'covariate_flag', 'covariate_date', 'days_to_index']
        )
        self.assertEqual(result.data['covariate_flag'].tolist(), [True, False, False])
        self.assertTrue(result.data.loc[1:, 'covariate_date'].isna().all())
        self.assertTrue(result.data.loc[1:, 'days_to_index'].isna().all())

    def test_latest_event_for_max(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P1'],
            'event_date': ['2022-03-15', '2023-07-22'],
            'code': ['E11', 'E11'],
        })
        result = self.selector.generate_covariates(
            events, self.cohort, self.lookup, 'diabetes', selection_method='max'
        )
        self.assertEqual(result.data.loc[0, 'covariate_date'], pd.Timestamp('2023-07-22'))

    def test_selection_independent_of_row_order(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P1', 'P1', 'P2', 'P2'],
            'event_date': ['2021-06-01', '2019-01-01', '2023-02-01', '2020-05-05', '2018-05-05'],
            'code': ['E11', 'E11.9', 'E11', 'E11', 'E11'],
        })
        forward = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')
        backward = self.selector.generate_covariates(
            events.iloc[::-1].reset_index(drop=True), self.cohort, self.lookup, 'diabetes'
        )
        pd.testing.assert_frame_equal(forward.data, backward.data)

    def test_lookback_end_boundary(self):
        """An event exactly days_before_end before index is in, one day closer is out."""
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'event_date': ['2023-12-02', '2023-12-03'],
            'code': ['E11', 'E11'],
        })
        result = self.selector.generate_covariates(
            events, self.cohort, self.lookup, 'diabetes', days_before_start=365, days_before_end=30
        )
        self.assertEqual(result.data['covariate_flag'].tolist(), [True, False, False])
        self.assertEqual(result.data.loc[0, 'days_to_index'], -30)

    def test_lookback_start_boundary(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'event_date': ['2023-01-01', '2022-12-31'],
            'code': ['E11', 'E11'],
        })
        result = self.selector.generate_covariates(
            events, self.cohort, self.lookup, 'diabetes', days_before_start=365, days_before_end=30
        )
        self.assertEqual(result.data['covariate_flag'].tolist(), [True, False, False])

    def test_events_after_index_are_ignored(self):
        events = pd.DataFrame({
            'patient_id': ['P1'],
            'event_date': ['2024-02-01'],
            'code': ['E11'],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')
        self.assertFalse(result.data['covariate_flag'].any())

    def test_same_date_tie_broken_by_code(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P1'],
            'event_date': ['2022-01-01', '2022-01-01'],
            'code': ['E11.9', 'E11'],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')

        self.assertEqual(result.n_flagged, 1)
        self.assertEqual(result.quality.n_events_in_window, 2)

    def test_codes_are_compared_as_trimmed_strings(self):
        events = pd.DataFrame({
            'patient_id': ['P1'],
            'event_date': ['2022-01-01'],
            'code': [' E11 '],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')
        self.assertTrue(result.data.loc[0, 'covariate_flag'])

    def test_terminology_must_match_when_present(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2', 'P3'],
            'event_date': ['2022-01-01', '2022-01-01', '2022-01-01'],
            'code': ['E11', 'E11', 'C10'],
            'terminology': ['icd10', 'READ', None],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')

        self.assertEqual(result.data['covariate_flag'].tolist(), [True, False, True])

    def test_unknown_name_flags_nobody(self):
        """A name missing from the lookup gives an all-false result with zero coverage."""
        events = pd.DataFrame({
            'patient_id': ['P1'],
            'event_date': ['2022-01-01'],
            'code': ['E11'],
        })
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'hypertension')

        self.assertEqual(len(result.data), 3)
        self.assertFalse(result.data['covariate_flag'].any())
        self.assertEqual(result.quality.coverage_pct, 0.0)
        self.assertEqual(result.quality.n_codes, 0)

    def test_empty_events_flags_nobody(self):
        events = pd.DataFrame(columns=['patient_id', 'event_date', 'code'])
        result = self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')

        self.assertEqual(len(result.data), 3)
        self.assertFalse(result.data['covariate_flag'].any())

    def test_unknown_name_is_reported_as_not_in_lookup(self):
        events = pd.DataFrame({'patient_id': ['P1'], 'event_date': ['2022-01-01'], 'code': ['E11']})

        with self.assertLogs('cohort_curation_pipeline.TemporalEventSelector', level='WARNING') as logs:
            self.selector.generate_covariates(events, self.cohort, self.lookup, 'hypertension')

        self.assertTrue(any("'hypertension' is not a lookup name" in line for line in logs.output))

    def test_days_to_index_can_be_left_empty(self):
        events = pd.DataFrame({'patient_id': ['P1'], 'event_date': ['2022-03-15'], 'code': ['E11']})
        result = self.selector.generate_covariates(
            events, self.cohort, self.lookup, 'diabetes', calculate_days_to_index=False
        )
        data = result.data

        self.assertIn('days_to_index', data.columns)
        self.assertEqual(str(data['days_to_index'].dtype), 'Int64')
        self.assertTrue(data['days_to_index'].isna().all())
        self.assertTrue(data.loc[0, 'covariate_flag'])
        self.assertEqual(data.loc[0, 'covariate_date'], pd.Timestamp('2022-03-15'))

    def test_quality_report_is_emitted(self):
        events = pd.DataFrame({
            'patient_id': ['P1', 'P1', 'P2', 'P9'],
            'event_date': ['2022-03-15', '2023-07-22', '2025-01-01', '2020-01-01'],
            'code': ['E11', 'E11', 'E11.9', 'E11'],
        })
        self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes', label='t2dm')
        quality = self.reporter.last(EventQualityReport)

        self.assertEqual(quality.label, 't2dm')
        self.assertEqual(quality.n_events, 4)
        self.assertEqual(quality.n_patients_with_events, 2)
        self.assertAlmostEqual(quality.coverage_pct, 66.67)
        self.assertEqual(quality.earliest_date, pd.Timestamp('2020-01-01'))
        self.assertEqual(quality.latest_date, pd.Timestamp('2025-01-01'))
        self.assertEqual(quality.code_counts['code'].tolist(), ['E11', 'E11.9'])
        self.assertEqual(quality.code_counts['n_events'].tolist(), [3, 1])
        self.assertEqual(quality.n_flagged, 1)

    def test_invalid_selection_method(self):
        events = pd.DataFrame(columns=['patient_id', 'event_date', 'code'])
        with self.assertRaises(ConfigurationError):
            self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes',
                                              selection_method='median')

    def test_invalid_window(self):
        events = pd.DataFrame(columns=['patient_id', 'event_date', 'code'])
        with self.assertRaises(ConfigurationError):
            self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes',
                                              days_before_start=10, days_before_end=20)

    def test_lookup_missing_columns(self):
        events = pd.DataFrame(columns=['patient_id', 'event_date', 'code'])
        lookup = self.lookup.drop(columns=['terminology'])
        with self.assertRaises(ConfigurationError) as cm:
            self.selector.generate_covariates(events, self.cohort, lookup, 'diabetes')
        self.assertIn("lookup_table must have columns", str(cm.exception))

    def test_events_missing_columns(self):
        events = pd.DataFrame({'patient_id': ['P1'], 'code': ['E11']})
        with self.assertRaises(ValidationError):
            self.selector.generate_covariates(events, self.cohort, self.lookup, 'diabetes')


class TestOutcomes(unittest.TestCase):
    """Test cases for outcome generation."""

    def setUp(self):
        """Set up test fixtures."""
        self.selector = TemporalEventSelector()
        self.lookup = make_lookup()
        self.cohort = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'index_date': pd.to_datetime(['2024-01-01', '2024-01-01']),
        })

    def test_follow_up_window(self):
        """Events 74 days after index are in a 365 day window, 400 days are not."""
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'event_date': ['2024-03-15', '2025-02-04'],
            'code': ['I63', 'I63'],
        })
        result = self.selector.generate_outcomes(
            events, self.cohort, self.lookup, 'stroke', days_after_start=0, days_after_end=365
        )
        data = result.data

        self.assertEqual(list(data.columns),
                         ['patient_id', 'index_date', 'outcome_flag', 'outcome_date', 'days_from_index'])
        self.assertEqual(data['outcome_flag'].tolist(), [True, False])
        self.assertEqual(data.loc[0, 'days_from_index'], 74)

    def test_event_on_index_date_counts_from_day_zero(self):
        events = pd.DataFrame({'patient_id': ['P1'], 'event_date': ['2024-01-01'], 'code': ['I63']})

        included = self.selector.generate_outcomes(events, self.cohort, self.lookup, 'stroke')
        excluded = self.selector.generate_outcomes(events, self.cohort, self.lookup, 'stroke',
                                                   days_after_start=1)

        self.assertTrue(included.data.loc[0, 'outcome_flag'])
        self.assertFalse(excluded.data.loc[0, 'outcome_flag'])

    def test_events_before_index_are_ignored(self):
        events = pd.DataFrame({'patient_id': ['P1'], 'event_date': ['2023-12-31'], 'code': ['I63']})
        result = self.selector.generate_outcomes(events, self.cohort, self.lookup, 'stroke')
        self.assertFalse(result.data['outcome_flag'].any())

    def test_per_patient_index_dates(self):
        cohort = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'index_date': pd.to_datetime(['2024-01-01', '2024-06-01']),
        })
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'event_date': ['2024-03-01', '2024-03-01'],
            'code': ['I63', 'I63'],
        })
        result = self.selector.generate_outcomes(events, cohort, self.lookup, 'stroke')
        self.assertEqual(result.data['outcome_flag'].tolist(), [True, False])

    def test_end_before_start_rejected(self):
        events = pd.DataFrame(columns=['patient_id', 'event_date', 'code'])
        with self.assertRaises(ConfigurationError):
            self.selector.generate_outcomes(events, self.cohort, self.lookup, 'stroke',
                                            days_after_start=30, days_after_end=10)

    def test_follow_up_end_boundary(self):
        """Day 365 is inside a 365 day window and day 366 is outside."""
        events = pd.DataFrame({
            'patient_id': ['P1', 'P2'],
            'event_date': ['2024-12-31', '2025-01-01'],
            'code': ['I63', 'I63'],
        })
        result = self.selector.generate_outcomes(
            events, self.cohort, self.lookup, 'stroke', days_after_start=0, days_after_end=365
        )
        data = result.data

        self.assertEqual(data['outcome_flag'].tolist(), [True, False])
        self.assertEqual(data.loc[0, 'days_from_index'], 365)
        self.assertTrue(pd.isna(data.loc[1, 'outcome_date']))

    def test_days_from_index_can_be_left_empty(self):
        events = pd.DataFrame({'patient_id': ['P1'], 'event_date': ['2024-03-15'], 'code': ['I63']})
        result = self.selector.generate_outcomes(
            events, self.cohort, self.lookup, 'stroke', calculate_days_from_index=False
        )

        self.assertTrue(result.data.loc[0, 'outcome_flag'])
        self.assertTrue(result.data['days_from_index'].isna().all())

    def test_definition_switches_off_day_counts(self):
        definition = EventDefinition.from_dict(
            {'name': 'stroke', 'event_assets': ['gp'], 'calculate_days_from_index': False}, OUTCOME
        )
        events = pd.DataFrame({'patient_id': ['P1'], 'event_date': ['2024-03-15'], 'code': ['I63']})
        result = self.selector.generate_from_definition(definition, events, self.cohort, self.lookup)

        self.assertFalse(definition.calculate_days)
        self.assertTrue(result.data['days_from_index'].isna().all())

    def test_day_count_switch_must_be_boolean(self):
        with self.assertRaises(ConfigurationError):
            EventDefinition.from_dict({'name': 'stroke', 'calculate_days_from_index': 'no'}, OUTCOME)


class TestMultipleResults(unittest.TestCase):
    """Test cases for batch generation."""

    def setUp(self):
        """Set up test fixtures."""
        self.selector = TemporalEventSelector()
        self.lookup = make_lookup()
        self.cohort = pd.DataFrame({
            'patient_id': ['P1', 'P2', 'P3'],
            'index_date': pd.to_datetime(['2024-01-01'] * 3),
        })
        self.events = pd.DataFrame({
            'patient_id': ['P1', 'P2', 'P3', 'P3'],
            'event_date': ['2022-01-01', '2023-05-01', '2024-04-01', '2021-01-01'],
            'code': ['E11', 'I63', 'I63', 'E11.9'],
        })

    def test_threaded_matches_sequential(self):
        sequential = self.selector.generate_multiple_covariates(
            self.events, self.cohort, self.lookup, ['diabetes', 'stroke']
        )
        threaded = self.selector.generate_multiple_covariates(
            self.events, self.cohort, self.lookup, ['diabetes', 'stroke'], max_workers=4
        )

        self.assertEqual([r.label for r in threaded], ['diabetes', 'stroke'])
        for left, right in zip(sequential, threaded):
            pd.testing.assert_frame_equal(left.data, right.data)
        self.assertEqual(threaded[0].data['covariate_flag'].tolist(), [True, False, True])
        self.assertEqual(threaded[1].data['covariate_flag'].tolist(), [False, True, False])

    def test_multiple_outcomes(self):
        results = self.selector.generate_multiple_outcomes(
            self.events, self.cohort, self.lookup, ['stroke'], days_after_end=365, max_workers=2
        )
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].kind, OUTCOME)
        self.assertEqual(results[0].data['outcome_flag'].tolist(), [False, False, True])

    def test_definitions_with_per_label_events(self):
        definitions = [
            EventDefinition(name='diabetes', kind=COVARIATE, event_assets=['gp'], label='dm_ever'),
            EventDefinition(name='diabetes', kind=COVARIATE, event_assets=['gp'], label='dm_recent',
                            days_before_start=365),
        ]
        events = {'dm_ever': self.events, 'dm_recent': self.events}
        results = self.selector.generate_from_definitions(definitions, events, self.cohort, self.lookup)

        self.assertEqual([r.label for r in results], ['dm_ever', 'dm_recent'])
        self.assertEqual(results[0].data['covariate_flag'].tolist(), [True, False, True])
        self.assertEqual(results[1].data['covariate_flag'].tolist(), [False, False, False])

    def test_duplicate_labels_rejected(self):
        definitions = [
            EventDefinition(name='diabetes', kind=COVARIATE, event_assets=['gp']),
            EventDefinition(name='diabetes', kind=COVARIATE, event_assets=['gp']),
        ]
        with self.assertRaises(ConfigurationError):
            self.selector.generate_from_definitions(definitions, self.events, self.cohort, self.lookup)

    def test_errors_in_workers_propagate(self):
        bad_cohort = self.cohort.drop(columns=['index_date'])
        with self.assertRaises(ValidationError):
            self.selector.generate_multiple_covariates(
                self.events, bad_cohort, self.lookup, ['diabetes', 'stroke'], max_workers=2
            )

    def test_names_missing_from_lookup_are_warned_up_front(self):
        definitions = [
            EventDefinition(name='diabetes', kind=COVARIATE, event_assets=['gp']),
            EventDefinition(name='asthma', kind=COVARIATE, event_assets=['gp']),
        ]
        with self.assertLogs('cohort_curation_pipeline.TemporalEventSelector', level='WARNING') as logs:
            self.selector.validate_definitions(definitions, self.lookup)

        self.assertTrue(any("['asthma']" in line for line in logs.output))


if __name__ == '__main__':
    unittest.main()
