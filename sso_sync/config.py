"""
Configuration loading and management for SSO Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from sso_sync.logging_setup import audit_logger
from sso_sync.sync import SYNC_METHODS, DEFAULT_SYNC_METHOD

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for secrets and run knobs
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'scim.access_token': 'SCIM_ACCESS_TOKEN',
        'scim.endpoint': 'SCIM_ENDPOINT',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'sync.method': 'SYNC_METHOD',
        'sync.user_match': 'USER_MATCH',
        'sync.group_match': 'GROUP_MATCH',
    }

    # Comma separated list overrides
    LIST_ENV_OVERRIDES = {
        'sync.ignore_users': 'IGNORE_USERS',
        'sync.ignore_groups': 'IGNORE_GROUPS',
        'sync.include_groups': 'INCLUDE_GROUPS',
    }

    LIST_FIELDS = ['ignore_users', 'ignore_groups', 'include_groups']

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Args:
            overrides: Dotted-key values applied after the environment, e.g. from CLI flags

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()

        for key_path, value in (overrides or {}).items():
            if value is not None:
                self._set_nested_value(self.config, key_path, value)
                logger.debug(f"Applied command line override for {key_path}")

        self._validate()
        self._apply_defaults()

        audit_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        for config_key, env_var in self.LIST_ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, split_list(env_value))
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        scim_config = self.config.get('scim') or {}
        for field in ['endpoint', 'access_token']:
            if not scim_config.get(field):
                errors.append(f"Missing required SCIM field: {field}")

        endpoint = scim_config.get('endpoint')
        if endpoint and not str(endpoint).startswith(('https://', 'http://')):
            errors.append(f"SCIM endpoint must be an http(s) URL: {endpoint}")

        sync_config = self.config.get('sync') or {}
        method = sync_config.get('method', DEFAULT_SYNC_METHOD)
        if method not in SYNC_METHODS:
            errors.append(f"Invalid sync.method '{method}', expected one of: {', '.join(SYNC_METHODS)}")

        for field in self.LIST_FIELDS:
            value = sync_config.get(field)
            if value is not None and not isinstance(value, list):
                errors.append(f"sync.{field} must be a list")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'user_base_dn': '',
            'group_base_dn': '',
            'user_filter': '(objectClass=person)',
            'group_filter': '(objectClass=group)',
            'deleted_user_filter': '',
            'page_size': 1000,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        scim_defaults = {
            'verify_ssl': True,
            'page_size': 50,
            'timeout': 30,
        }
        scim_config = self.config.setdefault('scim', {})
        for key, value in scim_defaults.items():
            scim_config.setdefault(key, value)

        sync_defaults = {
            'method': DEFAULT_SYNC_METHOD,
            'user_match': '',
            'group_match': '',
            'ignore_users': [],
            'ignore_groups': [],
            'include_groups': [],
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            if sync_config.get(key) is None:
                sync_config[key] = value

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'retry_backoff': 2.0,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        notification_defaults = {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True
        }
        notification_config = self.config.setdefault('notifications', {})
        for key, value in notification_defaults.items():
            notification_config.setdefault(key, value)


def split_list(value: str) -> List[str]:
    """Split a comma separated string, dropping blanks."""
    return [item.strip() for item in value.split(',') if item.strip()]


def load_config(config_path: Optional[str] = None,
                overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        overrides: Dotted-key values that take precedence over file and environment

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load(overrides)
