#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers loading, validation, defaults, environment variable overrides and
the immutable policy values built from a loaded configuration.
"""

import os
import sys
import tempfile
import yaml
import unittest
from dataclasses import FrozenInstanceError
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_lifecycle.config import ConfigLoader, ConfigurationError, load_config, PasswordPolicy, AuditPolicy


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_url': 'ldaps://dc1.example.com:636',
                'bind_dn': 'CN=svc-ldap,OU=Service,DC=example,DC=com',
                'bind_password': 'password',
                'base_dn': 'DC=example,DC=com',
            },
            'database': {
                'url': 'sqlite:///lifecycle.db',
            },
            'password_policy': {
                'accounts_to_check': ['jdoe', 'asmith'],
                'max_age_days': 60,
                'mail_mapping': {'jdoe': 'jane.personal@example.com'},
            },
            'audit': {
                'excluded_ous': ['OU=Service'],
                'privileged_groups': ['CN=Domain Admins,CN=Users,DC=example,DC=com'],
            },
        }
        self.temp_files = []

    def tearDown(self):
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Dict[str, Any]) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
            self.temp_files.append(f.name)
            return f.name

    def test_valid_config_applies_defaults(self):
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertTrue(config['ldap']['use_ssl'])
        self.assertEqual(config['ldap']['page_size'], 1000)
        self.assertEqual(config['ldap']['search_time_limit'], 30)
        self.assertEqual(config['password_policy']['max_age_days'], 60)
        self.assertEqual(config['password_policy']['notification_days'], 14)
        self.assertEqual(config['audit']['search_base'], 'DC=example,DC=com')
        self.assertEqual(config['logging']['history_log_file'], 'history.log')
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertFalse(config['notifications']['email_on_success'])

    def test_plain_ldap_url_defaults_to_no_ssl(self):
        self.valid_config['ldap']['server_url'] = 'ldap://dc1.example.com:389'
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertFalse(config['ldap']['use_ssl'])

    def test_missing_required_fields(self):
        del self.valid_config['ldap']['bind_password']
        del self.valid_config['database']

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertIn('bind_password', str(ctx.exception))
        self.assertIn('database', str(ctx.exception))

    def test_invalid_policy_values(self):
        self.valid_config['password_policy']['notification_days'] = -1
        self.valid_config['password_policy']['mail_mapping'] = ['jdoe']
        self.valid_config['audit']['excluded_ous'] = 'OU=Service'

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(self.create_test_config(self.valid_config)).load()

        message = str(ctx.exception)
        self.assertIn('notification_days', message)
        self.assertIn('mail_mapping', message)
        self.assertIn('audit.excluded_ous', message)

    def test_blank_policy_values_are_reported(self):
        del self.valid_config['password_policy']
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(self.valid_config, f)
            f.write("password_policy:\n  max_age_days:\n  notification_days:\n")
            self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError) as ctx:
            ConfigLoader(f.name).load()

        message = str(ctx.exception)
        self.assertIn('password_policy.max_age_days must be a non-negative integer', message)
        self.assertIn('password_policy.notification_days must be a non-negative integer', message)

    def test_zero_policy_value_is_accepted(self):
        self.valid_config['password_policy']['notification_days'] = 0
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()
        self.assertEqual(PasswordPolicy.from_config(config).notification_days, 0)

    def test_file_not_found(self):
        with self.assertRaises(ConfigurationError):
            ConfigLoader('/nonexistent/config.yaml').load()

    def test_invalid_yaml(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("ldap: [unclosed")
            self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError):
            ConfigLoader(f.name).load()

    def test_non_mapping_root(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write("- just\n- a list\n")
            self.temp_files.append(f.name)

        with self.assertRaises(ConfigurationError):
            ConfigLoader(f.name).load()

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-env', 'DATABASE_URL': 'sqlite:///env.db',
                             'SMTP_PASSWORD': 'smtp-env'})
    def test_environment_overrides(self):
        config = load_config(self.create_test_config(self.valid_config))

        self.assertEqual(config['ldap']['bind_password'], 'from-env')
        self.assertEqual(config['database']['url'], 'sqlite:///env.db')
        self.assertEqual(config['notifications']['smtp_password'], 'smtp-env')

    @patch.dict(os.environ, {'DATABASE_URL': 'sqlite:///env.db'})
    def test_environment_can_supply_required_field(self):
        del self.valid_config['database']
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['database']['url'], 'sqlite:///env.db')

    def test_config_path_from_environment(self):
        path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            self.assertEqual(ConfigLoader().config_path, path)


class TestPolicies(unittest.TestCase):
    """Test cases for policy values built from configuration."""

    def test_password_policy_from_config(self):
        policy = PasswordPolicy.from_config({'password_policy': {
            'accounts_to_check': ['jdoe'], 'max_age_days': 42, 'notification_days': 7,
            'mail_mapping': {'jdoe': 'jane@example.com'},
        }})

        self.assertEqual(policy.accounts_to_check, ('jdoe',))
        self.assertEqual(policy.max_age_days, 42)
        self.assertEqual(policy.notification_days, 7)
        self.assertEqual(policy.mail_mapping, {'jdoe': 'jane@example.com'})

    def test_password_policy_defaults(self):
        policy = PasswordPolicy.from_config({})
        self.assertEqual((policy.max_age_days, policy.notification_days), (90, 14))

    def test_policies_are_immutable(self):
        policy = PasswordPolicy.from_config({})
        with self.assertRaises(FrozenInstanceError):
            policy.max_age_days = 1

    def test_mail_mapping_is_read_only(self):
        mapping = {'jdoe': 'jane@example.com'}
        policy = PasswordPolicy.from_config({'password_policy': {'mail_mapping': mapping}})

        with self.assertRaises(TypeError):
            policy.mail_mapping['jdoe'] = 'other@example.com'
        mapping['jdoe'] = 'other@example.com'
        self.assertEqual(policy.mail_mapping['jdoe'], 'jane@example.com')

    def test_audit_policy_search_base_falls_back_to_base_dn(self):
        policy = AuditPolicy.from_config({'ldap': {'base_dn': 'DC=example,DC=com'},
                                          'audit': {'privileged_accounts': ['admin']}})

        self.assertEqual(policy.search_base, 'DC=example,DC=com')
        self.assertEqual(policy.privileged_accounts, ('admin',))
        self.assertEqual(policy.excluded_ous, ())


if __name__ == '__main__':
    unittest.main()
