"""
Configuration loading and management for Identity Sync.

The configuration is a YAML file with the sections ``sync`` (policy and the
provider name), ``ldap`` or ``memory`` (the provider), ``store``, ``logging``
and ``error_handling``. Secrets can be supplied through environment variables.
"""

import os
import copy
import logging
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Loads, validates and completes the sync job configuration."""

    # dotted config key -> environment variable
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'ldap.keystore_password': 'LDAP_KEYSTORE_PASSWORD',
    }

    SUPPORTED_PROVIDER_TYPES = ('ldap', 'memory')
    REQUIRED_LDAP_FIELDS = ('server_url', 'bind_dn', 'bind_password')

    DEFAULTS = {
        'provider_type': 'ldap',
        'sync': {
            'user': {
                'auto_membership': [],
                'property_mapping': {},
                'expiration_time': 3600,
                'membership_nesting_depth': 1,
                'dynamic_membership': False,
                'enforce_dynamic_membership': False,
            },
            'group': {
                'auto_membership': [],
                'property_mapping': {},
                'expiration_time': 3600,
                'dynamic_groups': False,
            },
        },
        'store': {'path': 'store.yaml'},
        'logging': {'level': 'INFO', 'log_dir': 'logs', 'rotation': 'daily', 'retention_days': 7},
        'error_handling': {'max_retries': 3, 'retry_wait_seconds': 5},
    }

    LDAP_DEFAULTS = {
        'user_base_dn': '',
        'user_filter': '(objectClass=person)',
        'user_id_attribute': 'uid',
        'group_name_attribute': 'cn',
        'member_of_attribute': 'memberOf',
        'attributes': ['cn', 'givenName', 'sn', 'mail'],
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Validated configuration with defaults filled in

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        self.config = config

        self._apply_env_overrides()

        errors = self._validate_sync() + self._validate_provider()
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

        _fill_defaults(self.config, self.DEFAULTS)
        if self.config['provider_type'] == 'ldap':
            _fill_defaults(self.config['ldap'], self.LDAP_DEFAULTS)

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        for dotted_key, env_var in self.ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            *parents, leaf = dotted_key.split('.')
            section = self.config
            for key in parents:
                if not isinstance(section.get(key), dict):
                    section[key] = {}
                section = section[key]
            section[leaf] = value
            logger.debug(f"Applied environment override for {dotted_key}")

    def _validate_sync(self) -> List[str]:
        sync_config = self.config.get('sync')
        if not isinstance(sync_config, dict):
            return ["Missing required section: sync"]

        errors = []
        if not sync_config.get('provider'):
            errors.append("Missing required sync field: provider")

        for section_name in ('user', 'group'):
            section = sync_config.get(section_name) or {}
            if not isinstance(section, dict):
                errors.append(f"sync.{section_name} must be a mapping")
                continue
            if not isinstance(section.get('auto_membership', []), list):
                errors.append(f"sync.{section_name}.auto_membership must be a list of group ids")
            if not isinstance(section.get('property_mapping', {}), dict):
                errors.append(f"sync.{section_name}.property_mapping must be a mapping")
            expiration = section.get('expiration_time', 0)
            if not _is_number(expiration) or expiration < 0:
                errors.append(f"sync.{section_name}.expiration_time must be a non-negative number")
            if section_name == 'user':
                depth = section.get('membership_nesting_depth', 1)
                if not isinstance(depth, int) or isinstance(depth, bool):
                    errors.append("sync.user.membership_nesting_depth must be an integer")
        return errors

    def _validate_provider(self) -> List[str]:
        provider_type = self.config.get('provider_type', 'ldap')
        if provider_type not in self.SUPPORTED_PROVIDER_TYPES:
            return [f"Unsupported provider_type: {provider_type}"]
        if provider_type != 'ldap':
            return []

        ldap_config = self.config.get('ldap') or {}
        return [f"Missing required LDAP field: {field}"
                for field in self.REQUIRED_LDAP_FIELDS if not ldap_config.get(field)]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _fill_defaults(target: Dict[str, Any], defaults: Dict[str, Any]):
    """Recursively add missing keys; empty (None) sections are replaced."""
    for key, default in defaults.items():
        if isinstance(default, dict):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            _fill_defaults(target[key], default)
        elif key not in target:
            target[key] = copy.deepcopy(default)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
