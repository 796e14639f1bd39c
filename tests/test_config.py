#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, defaults and environment variable overrides.
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'directory': {
                'host': 'ldap.example.com',
                'base_dn': 'dc=example,dc=com',
                'bind_dn': 'cn=admin,dc=example,dc=com',
                'bind_password': 'password',
            },
            'logging': {
                'level': 'DEBUG',
            },
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def write_config(self, config) -> str:
        with tempfile.NamedTemporaryFile('w', suffix='.yaml', delete=False) as f:
            if isinstance(config, str):
                f.write(config)
            else:
                yaml.dump(config, f)
            self.temp_files.append(f.name)
            return f.name

    def test_load_valid_config_applies_defaults(self):
        config = ConfigLoader(self.write_config(self.valid_config)).load()

        directory = config['directory']
        self.assertEqual(directory['host'], 'ldap.example.com')
        self.assertIsNone(directory['port'])
        self.assertFalse(directory['secure'])
        self.assertEqual(directory['scope'], 'subtree')
        self.assertEqual(directory['count_limit'], -1)
        self.assertFalse(directory['pooling'])
        self.assertEqual(directory['timeout_ms'], 10000)
        self.assertEqual(directory['dialect'], 'generic')
        self.assertEqual(directory['user_id_attribute'], 'uid')
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['retention_days'], 7)

    def test_active_directory_user_id_default(self):
        self.valid_config['directory']['dialect'] = 'active_directory'
        config = load_config(self.write_config(self.valid_config))

        self.assertEqual(config['directory']['user_id_attribute'], 'sAMAccountName')

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(context.exception))

    def test_invalid_yaml(self):
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.write_config('directory: [unclosed')).load()
        self.assertIn('Invalid YAML', str(context.exception))

    def test_missing_directory_section(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.write_config({'logging': {}})).load()

    def test_validation_collects_all_errors(self):
        config = {
            'directory': {
                'port': '389',
                'scope': 'everything',
                'dialect': 'novell',
                'count_limit': 1.5,
            }
        }
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.write_config(config)).load()

        message = str(context.exception)
        self.assertIn('host', message)
        self.assertIn('base_dn', message)
        self.assertIn('port must be an integer', message)
        self.assertIn('count_limit must be an integer', message)
        self.assertIn('Invalid directory scope', message)
        self.assertIn('Invalid directory dialect', message)

    def test_bind_password_required_with_bind_dn(self):
        del self.valid_config['directory']['bind_password']
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.write_config(self.valid_config)).load()

    @patch.dict(os.environ, {'DIRECTORY_BIND_PASSWORD': 'from-env'})
    def test_environment_override(self):
        del self.valid_config['directory']['bind_password']
        config = ConfigLoader(self.write_config(self.valid_config)).load()

        self.assertEqual(config['directory']['bind_password'], 'from-env')

    def test_config_path_from_environment(self):
        path = self.write_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()
        self.assertEqual(loader.config_path, path)


if __name__ == '__main__':
    unittest.main()
