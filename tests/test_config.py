#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module provides unit tests for configuration loading from YAML, JSON
and PHP files, validation, defaults, environment variable overrides and
serialization.
"""

import os
import sys
import json
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Any, Dict

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import (
    ConfigLoader,
    ConfigurationError,
    dump_config,
    find_plugin_block,
    load_config,
    password_env_var,
)

FIXTURES = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'fixtures')
VARIANTS = ('plaintext', 'ldaps', 'aggregation', 'starttls')


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'passbolt': {
                'plugins': {
                    'directorySync': {
                        'enabled': True,
                        'defaultUser': 'ada@passbolt.com',
                        'defaultGroupAdminUser': 'ada@passbolt.com',
                        'ldap': {
                            'domains': {
                                'corp': {
                                    'domain_name': 'corp.example.com',
                                    'username': 'cn=sync,dc=corp,dc=example,dc=com',
                                    'password': 'secret',
                                    'base_dn': 'dc=corp,dc=example,dc=com',
                                    'hosts': ['ldap.corp.example.com'],
                                    'use_ssl': True,
                                    'port': 636,
                                }
                            }
                        }
                    }
                }
            },
            'logging': {
                'level': 'DEBUG',
                'log_dir': 'logs',
            },
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any], suffix: str = '.yaml') -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix=suffix, delete=False) as f:
            if suffix == '.json':
                json.dump(config_data, f)
            elif isinstance(config_data, str):
                f.write(config_data)
            else:
                yaml.safe_dump(config_data, f)
            self.temp_files.append(f.name)
            return f.name

    def test_valid_config(self):
        """Test loading a valid configuration."""
        config_file = self.create_test_config(self.valid_config)
        loaded = ConfigLoader(config_file).load()

        self.assertEqual(loaded.source, config_file)
        self.assertEqual(loaded.directory_sync.domain('corp').transport, 'ldaps')

        # configured values win, missing ones get defaults
        self.assertEqual(loaded.logging['level'], 'DEBUG')
        self.assertEqual(loaded.logging['retention_days'], 7)
        self.assertEqual(loaded.error_handling['max_retries'], 3)
        self.assertEqual(loaded.snapshot['path'], 'directory-snapshot.json')

    def test_json_config(self):
        """Test loading a JSON configuration."""
        config_file = self.create_test_config(self.valid_config, suffix='.json')
        loaded = load_config(config_file)
        self.assertEqual(len(loaded.directory_sync.domains), 1)

    def test_file_not_found(self):
        """Test handling of missing configuration file."""
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()

        self.assertIn("Configuration file not found", str(context.exception))

    def test_invalid_yaml(self):
        """Test handling of invalid YAML syntax."""
        config_file = self.create_test_config("passbolt: [unclosed\n")

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(config_file).load()

        self.assertIn("Invalid YAML", str(context.exception))

    def test_invalid_utf8(self):
        """Test that undecodable bytes are a configuration error in every format."""
        for suffix in ('.yaml', '.json', '.php'):
            with tempfile.NamedTemporaryFile(mode='wb', suffix=suffix, delete=False) as f:
                f.write(b'\xff\xfe passbolt: true\n')
                self.temp_files.append(f.name)

            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(f.name).load()
            self.assertIn("not valid UTF-8", str(context.exception))

    def test_unreadable_path(self):
        """Test that a directory given as config path is a configuration error."""
        config_dir = tempfile.mkdtemp(suffix='.yaml')
        self.addCleanup(os.rmdir, config_dir)

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(config_dir).load()

        self.assertIn("Cannot read configuration file", str(context.exception))

    def test_invalid_php(self):
        """Test handling of a PHP file that is not an array literal."""
        config_file = self.create_test_config("<?php echo 'hello';", suffix='.php')

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(config_file).load()

        self.assertIn("Invalid PHP configuration", str(context.exception))

    def test_validation_errors_are_listed(self):
        """Test that every validation error is reported at once."""
        domain = self.valid_config['passbolt']['plugins']['directorySync']['ldap']['domains']['corp']
        domain['hosts'] = []
        domain['use_ssl'] = False

        config_file = self.create_test_config(self.valid_config)
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(config_file).load()

        message = str(context.exception)
        self.assertIn("Configuration validation failed", message)
        self.assertIn("hosts must not be empty", message)
        self.assertIn("port 636 requires use_ssl", message)

    def test_structure_errors(self):
        """Test that type errors stop loading before validation."""
        self.valid_config['passbolt']['plugins']['directorySync']['enabled'] = 'yes'
        config_file = self.create_test_config(self.valid_config)

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(config_file).load()

        self.assertIn("directorySync.enabled must be a boolean", str(context.exception))

    def test_warnings_are_kept(self):
        """Test that warnings do not stop loading."""
        domain = self.valid_config['passbolt']['plugins']['directorySync']['ldap']['domains']['corp']
        domain['password'] = ''

        config_file = self.create_test_config(self.valid_config)
        loaded = ConfigLoader(config_file).load()

        self.assertTrue(any("bind password is empty" in w for w in loaded.report.warnings))

    @patch.dict(os.environ, {'LDAP_CORP_PASSWORD': 'env_password'})
    def test_env_var_overrides(self):
        """Test environment variable overrides for bind passwords."""
        config_file = self.create_test_config(self.valid_config)
        loaded = ConfigLoader(config_file).load()

        self.assertEqual(loaded.directory_sync.domain('corp').password, 'env_password')

    @patch.dict(os.environ, {'DIRECTORY_SYNC_CONFIG': '/custom/path/config.yaml'})
    def test_config_path_from_env(self):
        """Test config path from environment variable."""
        loader = ConfigLoader()
        self.assertEqual(loader.config_path, '/custom/path/config.yaml')

    def test_app_section_must_be_mapping(self):
        self.valid_config['error_handling'] = ['max_retries']
        config_file = self.create_test_config(self.valid_config)

        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(config_file).load()

        self.assertIn("error_handling must be a mapping", str(context.exception))


class TestPluginBlock(unittest.TestCase):
    """Test cases for locating the directorySync block."""

    def test_nested_locations(self):
        block = {'enabled': False}
        self.assertIs(find_plugin_block({'passbolt': {'plugins': {'directorySync': block}}}), block)
        self.assertIs(find_plugin_block({'plugins': {'directorySync': block}}), block)
        self.assertIs(find_plugin_block({'directorySync': block}), block)

    def test_missing_block(self):
        with self.assertRaises(ConfigurationError) as context:
            find_plugin_block({'passbolt': {'plugins': {}}})
        self.assertIn("No directorySync block found", str(context.exception))

    def test_block_not_a_mapping(self):
        with self.assertRaises(ConfigurationError):
            find_plugin_block({'directorySync': 'enabled'})

    def test_root_not_a_mapping(self):
        with self.assertRaises(ConfigurationError):
            find_plugin_block(['directorySync'])

    def test_password_env_var(self):
        self.assertEqual(password_env_var('corp'), 'LDAP_CORP_PASSWORD')
        self.assertEqual(password_env_var('example-com.eu'), 'LDAP_EXAMPLE_COM_EU_PASSWORD')


class TestFixtureVariants(unittest.TestCase):
    """The four shipped variants load, and their PHP and YAML renditions agree."""

    def test_yaml_and_php_agree(self):
        for variant in VARIANTS:
            with self.subTest(variant=variant):
                from_yaml = load_config(os.path.join(FIXTURES, f"{variant}.yaml")).directory_sync
                from_php = load_config(os.path.join(FIXTURES, f"{variant}.php")).directory_sync
                self.assertEqual(from_yaml.to_mapping(), from_php.to_mapping())

    def test_transports(self):
        expected = {
            'plaintext': 'plain',
            'ldaps': 'ldaps',
            'aggregation': 'ldaps',
            'starttls': 'starttls',
        }
        for variant, transport in expected.items():
            with self.subTest(variant=variant):
                config = load_config(os.path.join(FIXTURES, f"{variant}.yaml")).directory_sync
                self.assertTrue(all(d.transport == transport for d in config.domains))

    def test_aggregation_proxy(self):
        config = load_config(os.path.join(FIXTURES, 'aggregation.php')).directory_sync
        endpoint = config.domain('unified')

        self.assertEqual(endpoint.hosts, ('ldap-meta.local',))
        self.assertEqual(endpoint.port, 636)
        self.assertEqual(config.schema.group_object_class, 'groupOfUniqueNames')
        self.assertEqual(config.schema.fields_for('openldap', 'group')['users'], 'uniqueMember')

    def test_dump_and_reload(self):
        """load -> serialize -> load gives an equal configuration."""
        for variant in VARIANTS:
            for fmt, suffix in (('yaml', '.yaml'), ('json', '.json')):
                with self.subTest(variant=variant, fmt=fmt):
                    original = load_config(os.path.join(FIXTURES, f"{variant}.php")).directory_sync
                    with tempfile.NamedTemporaryFile(mode='w', suffix=suffix, delete=False) as f:
                        f.write(dump_config(original, fmt))
                    try:
                        reloaded = load_config(f.name).directory_sync
                    finally:
                        os.unlink(f.name)
                    self.assertEqual(reloaded.to_mapping(), original.to_mapping())

    def test_dump_unknown_format(self):
        config = load_config(os.path.join(FIXTURES, 'plaintext.yaml')).directory_sync
        with self.assertRaises(ValueError):
            dump_config(config, 'xml')


if __name__ == '__main__':
    unittest.main()
