"""
Configuration loading and management for AD Roster Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, and builds the immutable run context that is passed
explicitly to every sync component.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Any, Mapping, Optional

logger = logging.getLogger(__name__)

GIVEN_NAME_FIELD = 'GivenName'
SURNAME_FIELD = 'Surname'


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass(frozen=True)
class SyncContext:
    """Immutable settings for a single synchronization run."""

    csv_file_path: str
    field_map: Mapping[str, str]
    unique_id: str
    ou_property: str
    domain: str
    delimiter: str = ','
    encoding: str = 'utf-8-sig'
    keep_disabled_for_days: int = 7
    upn_suffix: str = ''
    password_length: int = 16
    max_person_errors: int = 0
    dry_run: bool = False
    synced_fields: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({
        'title': 'Title',
        'department': 'Department',
        'office': 'Office',
    }))

    @property
    def principal_suffix(self) -> str:
        return self.upn_suffix or self.domain

    @property
    def fields(self) -> tuple:
        """Canonical field names, in field map order."""
        return tuple(self.field_map.values())


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive or host-specific fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'sync.csv_file_path': 'ROSTER_CSV_PATH',
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
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
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

        # Validate LDAP configuration
        ldap_config = self.config.get('ldap') or {}
        required_ldap_fields = ['domain', 'bind_dn', 'bind_password']
        for field_name in required_ldap_fields:
            if not ldap_config.get(field_name):
                errors.append(f"Missing required LDAP field: {field_name}")

        # Validate sync configuration
        sync_config = self.config.get('sync') or {}
        required_sync_fields = ['csv_file_path', 'sync_field_map', 'unique_id', 'ou_property']
        for field_name in required_sync_fields:
            if not sync_config.get(field_name):
                errors.append(f"Missing required sync field: {field_name}")

        field_map = sync_config.get('sync_field_map')
        if field_map is not None:
            if not isinstance(field_map, dict):
                errors.append("sync.sync_field_map must be a mapping of source column to field name")
            else:
                canonical = list(field_map.values())
                duplicates = sorted({name for name in canonical if canonical.count(name) > 1})
                if duplicates:
                    errors.append(f"Duplicate field names in sync.sync_field_map: {', '.join(duplicates)}")

                required_fields = [GIVEN_NAME_FIELD, SURNAME_FIELD]
                for key in ('unique_id', 'ou_property'):
                    if sync_config.get(key):
                        required_fields.append(sync_config[key])
                for name in required_fields:
                    if name not in canonical:
                        errors.append(f"sync.sync_field_map does not map any column to {name}")

        delimiter = sync_config.get('delimiter', ',')
        if not isinstance(delimiter, str) or len(delimiter) != 1:
            errors.append("sync.delimiter must be a single character")

        for key in ('keep_disabled_for_days', 'password_length'):
            value = sync_config.get(key)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
                errors.append(f"sync.{key} must be a non-negative integer")

        if sync_config.get('password_length') is not None and isinstance(sync_config['password_length'], int):
            if sync_config['password_length'] < 8:
                errors.append("sync.password_length must be at least 8")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_config = self.config.setdefault('ldap', {})
        domain = ldap_config['domain']
        ldap_defaults = {
            'server_url': f"ldaps://{domain}",
            'base_dn': domain_to_base_dn(domain),
        }
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)
        ldap_config.setdefault('ou_base_dn', ldap_config['base_dn'])

        sync_defaults = {
            'delimiter': ',',
            'encoding': 'utf-8-sig',
            'keep_disabled_for_days': 7,
            'upn_suffix': domain,
            'password_length': 16,
        }
        sync_config = self.config.setdefault('sync', {})
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
            'max_person_errors': 0
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)
        ldap_config.setdefault('error_handling', error_config)

        # Notification defaults
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


def domain_to_base_dn(domain: str) -> str:
    """Convert a DNS domain name such as ``corp.example.com`` into a base DN."""
    return ','.join(f"DC={part}" for part in domain.split('.') if part)


def build_context(config: Dict[str, Any], dry_run: bool = False) -> SyncContext:
    """
    Build the immutable run context from a loaded configuration dictionary.

    Args:
        config: Configuration as returned by ConfigLoader.load()
        dry_run: Compute and log changes without applying them

    Returns:
        SyncContext for one run
    """
    sync_config = config['sync']
    ldap_config = config['ldap']
    return SyncContext(
        csv_file_path=sync_config['csv_file_path'],
        field_map=MappingProxyType(dict(sync_config['sync_field_map'])),
        unique_id=sync_config['unique_id'],
        ou_property=sync_config['ou_property'],
        domain=ldap_config['domain'],
        delimiter=sync_config.get('delimiter', ','),
        encoding=sync_config.get('encoding', 'utf-8-sig'),
        keep_disabled_for_days=sync_config.get('keep_disabled_for_days', 7),
        upn_suffix=sync_config.get('upn_suffix') or ldap_config['domain'],
        password_length=sync_config.get('password_length', 16),
        max_person_errors=config.get('error_handling', {}).get('max_person_errors', 0),
        dry_run=dry_run,
    )


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
