#!/usr/bin/env python3
"""Unit tests for ConfigurationManager."""

import unittest
import tempfile
import shutil
import yaml
import pandas as pd
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cohort_curation_pipeline.config import ConfigurationManager
from cohort_curation_pipeline.exceptions import ConfigurationError
from cohort_curation_pipeline.models.records import AssetKind, SourceQuality, COVARIATE, OUTCOME


class TestConfigurationManager(unittest.TestCase):
    """Test cases for ConfigurationManager class."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.config = {
            'database': {'path': ':memory:', 'schema': 'SAIL', 'retries': 1},
            'assets': {
                'sex': {
                    'sources': {
                        'wds': {
                            'table_name': 'WDSD_PATIENT',
                            'priority': 2,
                            'columns': {'patient_id': 'ALF_PE', 'sex_code': 'GNDR_CD'},
                        },
                        'gp': {
                            'table_name': 'GP_PATIENT',
                            'priority': 1,
                            'quality': 'high',
                            'columns': {'patient_id': 'ALF_PE', 'sex_code': 'SEX'},
                        },
                        'census': {
                            'table_name': 'CENSUS',
                            'priority': 2,
                            'columns': {'patient_id': 'ALF_PE', 'sex_code': 'SEX'},
                        },
                    },
                },
                'gp_events': {
                    'kind': 'event',
                    'default_source': 'primary_care',
                    'sources': {
                        'primary_care': {
                            'table_name': 'GP_EVENT',
                            'schema': 'OTHER',
                            'priority': 1,
                            'columns': {'patient_id': 'ALF_PE', 'event_date': 'EVENT_DT', 'code': 'EVENT_CD'},
                        },
                    },
                },
            },
            'projects': {
                'census_study': {'preferred_sources': {'sex': 'census'}},
            },
            'cohort': {'index_date': '2024-01-01', 'min_age': 18},
            'lookup': {
                'entries': [
                    {'code': 'E11', 'name': 'diabetes', 'description': 'Type 2 diabetes', 'terminology': 'ICD10'},
                ],
            },
            'covariates': [
                {'name': 'diabetes', 'event_assets': 'gp_events', 'days_before_end': 0},
            ],
            'outcomes': [
                {'name': 'diabetes', 'label': 'incident_diabetes', 'event_assets': ['gp_events'],
                 'days_after_end': 365, 'selection_method': 'max'},
            ],
        }
        self.manager = ConfigurationManager()

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir)

    def write_yaml(self, config, filename='pipeline.yaml'):
        path = os.path.join(self.temp_dir, filename)
        with open(path, 'w') as f:
            yaml.dump(config, f)
        return path

    def test_load_yaml_spec(self):
        loaded = self.manager.load_yaml_spec(self.write_yaml(self.config))

        self.assertEqual(loaded['cohort']['min_age'], 18)
        self.assertEqual(sorted(self.manager.assets), ['gp_events', 'sex'])
        self.assertEqual(self.manager.get_asset('gp_events').kind, AssetKind.EVENT)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as cm:
            self.manager.load_yaml_spec(os.path.join(self.temp_dir, 'absent.yaml'))
        self.assertIn("Configuration file not found", str(cm.exception))

    def test_invalid_yaml(self):
        path = os.path.join(self.temp_dir, 'bad.yaml')
        with open(path, 'w') as f:
            f.write("assets: [unclosed\n")
        with self.assertRaises(ConfigurationError) as cm:
            self.manager.load_yaml_spec(path)
        self.assertIn("Invalid YAML format", str(cm.exception))

    def test_missing_assets_section(self):
        with self.assertRaises(ConfigurationError):
            self.manager.load_config({'cohort': {}})

    def test_source_parsing(self):
        self.manager.load_config(self.config)
        gp = self.manager.get_asset('sex').sources['gp']
        events = self.manager.get_asset('gp_events').sources['primary_care']

        self.assertEqual(gp.quality, SourceQuality.HIGH)
        self.assertEqual(gp.db_table, 'SAIL.GP_PATIENT')
        self.assertEqual(events.db_table, 'OTHER.GP_EVENT')
        self.assertEqual(self.manager.get_asset('sex').sources['wds'].quality, SourceQuality.MEDIUM)

    def test_sources_sorted_by_priority_then_name(self):
        self.manager.load_config(self.config)
        names = [s.name for s in self.manager.get_asset_sources('sex')]

        self.assertEqual(names, ['gp', 'census', 'wds'])

    def test_project_preference_promotes_source(self):
        self.manager.load_config(self.config)
        sources = self.manager.get_asset_sources('sex', project_name='census_study')

        self.assertEqual([(s.name, s.priority) for s in sources], [('census', 1), ('gp', 2), ('wds', 3)])
        self.assertEqual(self.manager.get_asset('sex').sources['census'].priority, 2)

    def test_include_sources(self):
        self.manager.load_config(self.config)
        names = [s.name for s in self.manager.get_asset_sources('sex', include_sources=['wds', 'census'])]
        self.assertEqual(names, ['census', 'wds'])

        with self.assertRaises(ConfigurationError):
            self.manager.get_asset_sources('sex', include_sources=['registry'])

    def test_select_source_for_asset(self):
        self.manager.load_config(self.config)

        self.assertEqual(self.manager.select_source_for_asset('sex'), 'gp')
        self.assertEqual(self.manager.select_source_for_asset('sex', project_name='census_study'), 'census')
        self.assertEqual(self.manager.select_source_for_asset('sex', preferred_source='wds'), 'wds')
        self.assertEqual(self.manager.select_source_for_asset('gp_events'), 'primary_care')

    def test_unknown_asset(self):
        self.manager.load_config(self.config)
        with self.assertRaises(ConfigurationError) as cm:
            self.manager.get_asset('height')
        self.assertIn("Asset 'height' not found in configuration", str(cm.exception))

    def test_unknown_project(self):
        self.manager.load_config(self.config)
        with self.assertRaises(ConfigurationError):
            self.manager.get_asset_sources('sex', project_name='nobody')

    def test_project_with_unknown_source_rejected(self):
        self.config['projects']['broken'] = {'preferred_sources': {'sex': 'registry'}}
        with self.assertRaises(ConfigurationError):
            self.manager.load_config(self.config)
        self.assertIsNone(self.manager.config)

    def test_invalid_source_definitions(self):
        invalid_sources = [
            {'priority': 1, 'columns': {'patient_id': 'ID'}},
            {'table_name': 'T', 'query': 'SELECT 1', 'priority': 1, 'columns': {'patient_id': 'ID'}},
            {'table_name': 'T', 'priority': 0, 'columns': {'patient_id': 'ID'}},
            {'table_name': 'T', 'priority': 1, 'coverage': 1.5, 'columns': {'patient_id': 'ID'}},
            {'table_name': 'T', 'priority': 1, 'columns': {'value': 'VAL'}},
            {'table_name': 'T', 'priority': 1, 'quality': 'excellent', 'columns': {'patient_id': 'ID'}},
        ]
        for source in invalid_sources:
            with self.subTest(source=source):
                config = {'assets': {'x': {'sources': {'s': source}}}}
                with self.assertRaises(ConfigurationError):
                    self.manager.load_config(config)

    def test_invalid_cohort_ages(self):
        self.config['cohort'] = {'min_age': 80, 'max_age': 18}
        with self.assertRaises(ConfigurationError):
            self.manager.validate_configuration(self.config)

    def test_cohort_settings_defaults(self):
        self.manager.load_config(self.config)
        settings = self.manager.cohort_settings

        self.assertEqual(settings['min_age'], 18)
        self.assertIsNone(settings['max_age'])
        self.assertTrue(settings['require_known_sex'])
        self.assertFalse(settings['require_lsoa'])
        self.assertEqual(settings['demographics'], {})

    def test_event_definitions(self):
        self.manager.load_config(self.config)
        covariates = self.manager.get_event_definitions(COVARIATE)
        outcomes = self.manager.get_event_definitions(OUTCOME)

        self.assertEqual(covariates[0].label, 'diabetes')
        self.assertEqual(covariates[0].event_assets, ['gp_events'])
        self.assertIsNone(covariates[0].days_before_start)
        self.assertEqual(outcomes[0].label, 'incident_diabetes')
        self.assertEqual(outcomes[0].days_after_end, 365)
        self.assertEqual(outcomes[0].selection_method, 'max')

    def test_event_definition_with_unknown_asset(self):
        self.config['covariates'][0]['event_assets'] = ['labs']
        with self.assertRaises(ConfigurationError):
            self.manager.load_config(self.config)

    def test_lookup_from_entries(self):
        self.manager.load_config(self.config)
        lookup = self.manager.get_lookup_table()

        self.assertEqual(lookup['code'].tolist(), ['E11'])
        self.assertIs(self.manager.get_lookup_table(), lookup)

    def test_lookup_file_relative_to_config(self):
        pd.DataFrame({
            'code': ['0123', 'I63'],
            'name': ['asthma', 'stroke'],
            'description': ['Asthma', 'Cerebral infarction'],
            'terminology': ['READ', 'ICD10'],
        }).to_csv(os.path.join(self.temp_dir, 'codes.csv'), index=False)
        self.config['lookup'] = {'file': 'codes.csv'}
        self.manager.load_yaml_spec(self.write_yaml(self.config))

        lookup = self.manager.get_lookup_table()
        self.assertEqual(lookup['code'].tolist(), ['0123', 'I63'])

    def test_lookup_missing_columns(self):
        path = os.path.join(self.temp_dir, 'codes.csv')
        pd.DataFrame({'code': ['E11'], 'name': ['diabetes']}).to_csv(path, index=False)

        with self.assertRaises(ConfigurationError) as cm:
            self.manager.load_lookup_table(path)
        self.assertIn("lookup_table must have columns: code, name, description, terminology", str(cm.exception))

    def test_no_lookup_configured(self):
        del self.config['lookup']
        self.manager.load_config(self.config)
        with self.assertRaises(ConfigurationError):
            self.manager.get_lookup_table()

    def test_source_columns(self):
        self.manager.load_config(self.config)
        self.assertEqual(
            self.manager.get_source_columns('sex', 'census'),
            {'patient_id': 'ALF_PE', 'sex_code': 'SEX'}
        )
        with self.assertRaises(ConfigurationError):
            self.manager.get_source_columns('sex', 'hospital')

    def test_calculate_days_switch(self):
        self.config['covariates'][0]['calculate_days_to_index'] = False
        self.manager.load_config(self.config)

        covariate = self.manager.get_event_definitions(COVARIATE)[0]
        outcome = self.manager.get_event_definitions(OUTCOME)[0]
        self.assertFalse(covariate.calculate_days)
        self.assertTrue(outcome.calculate_days)

    def test_preprocessing_steps_by_source_and_table(self):
        self.config['preprocessing'] = {
            'pipelines': {
                'clean_codes': [
                    {'type': 'data_transformation', 'column': 'code', 'transform_type': 'string_cleaning'},
                ],
            },
            'datasets': {
                'primary_care': {'pipeline': 'clean_codes'},
                'CENSUS': {'steps': {'known_sex': {'type': 'value_validation', 'column': 'sex_code',
                                                   'allowed_values': ['1', '2'], 'action': 'filter'}}},
                'gp': {'pipeline': 'clean_codes', 'enabled': False},
            },
        }
        self.manager.load_config(self.config)
        sources = self.manager.get_asset('sex').sources

        by_name = self.manager.get_preprocessing_steps(self.manager.get_asset('gp_events').sources['primary_care'])
        by_table = self.manager.get_preprocessing_steps(sources['census'])

        self.assertEqual([s['type'] for s in by_name], ['data_transformation'])
        self.assertEqual(by_name[0]['name'], 'step_1')
        self.assertEqual(by_table[0]['name'], 'known_sex')
        self.assertEqual(self.manager.get_preprocessing_steps(sources['gp']), [])
        self.assertEqual(self.manager.get_preprocessing_steps(sources['wds']), [])

    def test_preprocessing_unknown_pipeline_rejected(self):
        self.config['preprocessing'] = {'datasets': {'primary_care': {'pipeline': 'missing'}}}
        with self.assertRaises(ConfigurationError) as cm:
            self.manager.load_config(self.config)
        self.assertIn("unknown pipeline 'missing'", str(cm.exception))

    def test_preprocessing_unknown_step_type_rejected(self):
        self.config['preprocessing'] = {'pipelines': {'bad': [{'type': 'deduplicate'}]}}
        with self.assertRaises(ConfigurationError):
            self.manager.load_config(self.config)

    def test_preprocessing_dataset_needs_steps(self):
        self.config['preprocessing'] = {'datasets': {'primary_care': {'enabled': True}}}
        with self.assertRaises(ConfigurationError):
            self.manager.load_config(self.config)

    def test_index_date_baseline_strategy(self):
        self.config['cohort']['index_date'] = {'strategy': 'database', 'table': 'BASELINE'}
        self.manager.load_config(self.config)

        self.config['cohort']['index_date'] = {'strategy': 'registration'}
        with self.assertRaises(ConfigurationError):
            self.manager.load_config(self.config)


if __name__ == '__main__':
    unittest.main()
