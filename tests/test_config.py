#!/usr/bin/env python3
"""
Unit tests for configuration module.

Tests configuration loading, validation, defaults and environment variable
overrides.
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch
from typing import Dict, Any

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.config import ConfigLoader, ConfigurationError, load_config


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'provider_type': 'ldap',
            'ldap': {
                'server_url': 'ldaps://ldap.example.com:636',
                'bind_dn': 'CN=Service,DC=example,DC=com',
                'bind_password': 'password',
                'user_base_dn': 'OU=Users,DC=example,DC=com',
            },
            'sync': {
                'provider': 'ldap',
                'user': {
                    'membership_nesting_depth': 2,
                    'dynamic_membership': True,
                    'property_mapping': {'email': 'mail'},
                },
            },
        }

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
            return f.name

    def test_load_valid_config_file(self):
        """Test loading a valid configuration applies defaults."""
        config_path = self.create_test_config(self.valid_config)
        try:
            config = ConfigLoader(config_path).load()

            self.assertEqual(config['sync']['provider'], 'ldap')
            self.assertEqual(config['sync']['user']['membership_nesting_depth'], 2)
            self.assertEqual(config['sync']['user']['expiration_time'], 3600)
            self.assertFalse(config['sync']['user']['enforce_dynamic_membership'])
            self.assertFalse(config['sync']['group']['dynamic_groups'])
            self.assertEqual(config['sync']['group']['auto_membership'], [])
            self.assertEqual(config['ldap']['user_id_attribute'], 'uid')
            self.assertEqual(config['store']['path'], 'store.yaml')
            self.assertEqual(config['logging']['level'], 'INFO')
            self.assertEqual(config['error_handling']['max_retries'], 3)
        finally:
            os.unlink(config_path)

    def test_load_config_with_environment_overrides(self):
        """Test that environment variables replace sensitive fields."""
        config_path = self.create_test_config(self.valid_config)
        try:
            with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'env_password'}):
                config = ConfigLoader(config_path).load()
            self.assertEqual(config['ldap']['bind_password'], 'env_password')
        finally:
            os.unlink(config_path)

    def test_missing_config_file(self):
        """Test error handling for a missing configuration file."""
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn("not found", str(context.exception))

    def test_invalid_yaml_format(self):
        """Test error handling for malformed YAML."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("sync: [provider: ldap\n")
            invalid_config_path = f.name
        try:
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(invalid_config_path).load()
            self.assertIn("Invalid YAML", str(context.exception))
        finally:
            os.unlink(invalid_config_path)

    def test_missing_sync_provider(self):
        """Test that the sync provider name is required."""
        del self.valid_config['sync']['provider']
        config_path = self.create_test_config(self.valid_config)
        try:
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(config_path).load()
            self.assertIn("provider", str(context.exception))
        finally:
            os.unlink(config_path)

    def test_missing_required_ldap_fields(self):
        """Test that LDAP connection fields are required for the LDAP provider."""
        del self.valid_config['ldap']['bind_dn']
        config_path = self.create_test_config(self.valid_config)
        try:
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(config_path).load()
            self.assertIn("bind_dn", str(context.exception))
        finally:
            os.unlink(config_path)

    def test_invalid_nesting_depth(self):
        """Test that a non-integer nesting depth is rejected."""
        self.valid_config['sync']['user']['membership_nesting_depth'] = 'deep'
        config_path = self.create_test_config(self.valid_config)
        try:
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(config_path).load()
            self.assertIn("membership_nesting_depth", str(context.exception))
        finally:
            os.unlink(config_path)

    def test_invalid_auto_membership(self):
        self.valid_config['sync']['group'] = {'auto_membership': 'everyone'}
        config_path = self.create_test_config(self.valid_config)
        try:
            with self.assertRaises(ConfigurationError):
                ConfigLoader(config_path).load()
        finally:
            os.unlink(config_path)

    def test_memory_provider_needs_no_ldap_section(self):
        """Test that the in-memory provider does not require LDAP settings."""
        config_data = {'provider_type': 'memory', 'sync': {'provider': 'test', 'user': None}}
        config_path = self.create_test_config(config_data)
        try:
            config = ConfigLoader(config_path).load()
            self.assertNotIn('ldap', config)
            self.assertEqual(config['sync']['user']['membership_nesting_depth'], 1)
        finally:
            os.unlink(config_path)

    def test_unsupported_provider_type(self):
        config_path = self.create_test_config({'provider_type': 'radius', 'sync': {'provider': 'x'}})
        try:
            with self.assertRaises(ConfigurationError) as context:
                ConfigLoader(config_path).load()
            self.assertIn("radius", str(context.exception))
        finally:
            os.unlink(config_path)

    def test_config_from_environment_path(self):
        """Test that CONFIG_PATH is used when no path is given."""
        config_path = self.create_test_config(self.valid_config)
        try:
            with patch.dict(os.environ, {'CONFIG_PATH': config_path}):
                config = load_config()
            self.assertEqual(config['sync']['provider'], 'ldap')
        finally:
            os.unlink(config_path)


if __name__ == '__main__':
    unittest.main()
