"""
Configuration for LDAP Lifecycle.

The YAML file is read once, secrets may be supplied through environment
variables instead of the file, required fields are checked, and every
optional section is filled in from SECTION_DEFAULTS. The policy sections are
then exposed to the core as immutable PasswordPolicy and AuditPolicy values.
"""

import os
import yaml
import logging
from types import MappingProxyType
from dataclasses import dataclass, field
from typing import Dict, Any, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

# Dotted config key -> environment variable that overrides it
ENV_OVERRIDES = {
    'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    'ldap.default_password': 'LDAP_DEFAULT_PASSWORD',
    'notifications.smtp_password': 'SMTP_PASSWORD',
    'database.url': 'DATABASE_URL',
    'direct_auth.password': 'DIRECT_AUTH_PASSWORD',
}

REQUIRED_FIELDS = {
    'ldap': ('server_url', 'bind_dn', 'bind_password', 'base_dn'),
    'database': ('url',),
}

SECTION_DEFAULTS = {
    'ldap': {
        'start_tls': False,
        'verify_ssl': True,
        'connection_timeout': 10,
        'receive_timeout': 30,
        'search_time_limit': 30,
        'page_size': 1000,
        'user_principal_suffix': '',
    },
    'password_policy': {
        'accounts_to_check': [],
        'max_age_days': 90,
        'notification_days': 14,
        'mail_mapping': {},
    },
    'audit': {
        'excluded_ous': [],
        'excluded_groups': [],
        'privileged_groups': [],
        'privileged_accounts': [],
    },
    'direct_auth': {'distinguished_name': '', 'password': ''},
    'database': {'echo': False},
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
        'history_log_file': 'history.log',
    },
    'error_handling': {
        'max_retries': 3,
        'retry_wait_seconds': 5,
        'lookup_workers': 4,
        'lookup_chunk_size': 50,
    },
    'notifications': {
        'enable_email': True,
        'email_on_failure': True,
        'email_on_success': False,
        'smtp_port': 587,
        'smtp_tls': True,
        'email_to': [],
        'email_cc': '',
    },
}

AUDIT_LIST_FIELDS = ('excluded_ous', 'excluded_groups', 'privileged_groups', 'privileged_accounts')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = config.get(name)
    if not isinstance(value, dict):
        value = config[name] = {}
    return value


class ConfigLoader:
    """Reads, overrides, validates and completes the application configuration."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load the configuration file.

        Raises:
            ConfigurationError: If the file is missing, is not a YAML mapping,
                or fails validation
        """
        self.config = self._read()
        self._apply_env_overrides()

        problems = self._problems()
        if problems:
            raise ConfigurationError("Configuration validation failed:\n" +
                                     "\n".join(f"  - {problem}" for problem in problems))

        self._apply_defaults()
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        return data

    def _apply_env_overrides(self):
        for dotted_key, env_var in ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            section_name, key = dotted_key.split('.', 1)
            _section(self.config, section_name)[key] = value
            logger.debug(f"Applied environment override for {dotted_key}")

    def _problems(self) -> List[str]:
        problems = []

        for section_name, fields in REQUIRED_FIELDS.items():
            section = self.config.get(section_name) or {}
            problems.extend(f"Missing required {section_name} field: {name}"
                            for name in fields if not section.get(name))

        policy = self.config.get('password_policy') or {}
        for name in ('max_age_days', 'notification_days'):
            if name not in policy:
                continue
            # A key left blank in YAML loads as None
            value = policy[name]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                problems.append(f"password_policy.{name} must be a non-negative integer")
        if policy.get('mail_mapping') is not None and not isinstance(policy['mail_mapping'], dict):
            problems.append("password_policy.mail_mapping must be a mapping of account to address")

        audit = self.config.get('audit') or {}
        problems.extend(f"audit.{name} must be a list" for name in AUDIT_LIST_FIELDS
                        if audit.get(name) is not None and not isinstance(audit[name], list))
        return problems

    def _apply_defaults(self):
        for section_name, defaults in SECTION_DEFAULTS.items():
            section = _section(self.config, section_name)
            for key, value in defaults.items():
                section.setdefault(key, value.copy() if isinstance(value, (list, dict)) else value)

        ldap_section = self.config['ldap']
        ldap_section.setdefault('use_ssl', str(ldap_section['server_url']).lower().startswith('ldaps://'))
        self.config['audit'].setdefault('search_base', ldap_section['base_dn'])


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load, validate and complete the configuration at ``config_path``."""
    return ConfigLoader(config_path).load()


@dataclass(frozen=True)
class PasswordPolicy:
    """Password expiry policy handed to the password status operations."""
    accounts_to_check: Tuple[str, ...] = ()
    max_age_days: int = 90
    notification_days: int = 14
    mail_mapping: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'PasswordPolicy':
        section = config.get('password_policy') or {}
        return cls(
            accounts_to_check=tuple(section.get('accounts_to_check') or ()),
            max_age_days=int(section.get('max_age_days', 90)),
            notification_days=int(section.get('notification_days', 14)),
            mail_mapping=MappingProxyType(dict(section.get('mail_mapping') or {})),
        )


@dataclass(frozen=True)
class AuditPolicy:
    """Inclusion, exclusion and privilege rules for the account audit report."""
    search_base: str = ""
    excluded_ous: Tuple[str, ...] = ()
    excluded_groups: Tuple[str, ...] = ()
    privileged_groups: Tuple[str, ...] = ()
    privileged_accounts: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'AuditPolicy':
        section = config.get('audit') or {}
        lists = {name: tuple(section.get(name) or ()) for name in AUDIT_LIST_FIELDS}
        return cls(search_base=section.get('search_base') or (config.get('ldap') or {}).get('base_dn', ''),
                   **lists)
