"""
Configuration loading and management for LDAP Bulk Import.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. ``ImportSettings`` exposes the import-related sections
as attributes for the planner and executor.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from ldap_import.mapping import template_errors

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
        'provisioning.auth.token': 'PROVISIONING_TOKEN',
        'provisioning.auth.password': 'PROVISIONING_PASSWORD',
    }

    SECTION_DEFAULTS = {
        'ldap': {
            'use_ssl': None,
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 30,
            'page_size': 1000,
            'batch_size': 100,
            'container_batch_size': 50,
        },
        'import': {
            'container_column': 'ou',
            'first_name_column': 'givenName',
            'last_name_column': 'sn',
            'identifier_attribute': 'sAMAccountName',
            'max_identifier_length': 20,
            'identifier_attributes': [],
            'upn_suffix': '',
            'create_missing_containers': True,
            'move_entities': True,
            'overwrite_existing': True,
            'delete_not_in_import': False,
            'cleanup_empty_containers': True,
            'protected_containers': [],
        },
        'planning': {
            'strategy': 'parallel',
            'max_workers': None,
            'preload_fallback_workers': 10,
            'progress_interval': 100,
        },
        'execution': {
            'max_workers': 8,
            'provision_batch_size': 50,
            'provision_batch_pause_seconds': 0.2,
            'post_cleanup': True,
        },
        'folders': {
            'enable_share_provisioning': False,
            'target_server': '',
            'local_path': '',
            'share_name_template': '%username%$',
            'netbios_domain': '',
            'subfolders': [],
            'home_directory_template': '',
            'home_drive': 'H:',
        },
        'group_management': {
            'create_container_groups': False,
            'group_prefix': '',
            'class_groups': False,
            'class_group_template': 'GRP_%container%',
        },
        'logging': {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
        },
        'error_handling': {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        },
        'notifications': {
            'enable_email': False,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_port': 587,
            'smtp_tls': True,
        },
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

        return self.prepare(self.config)

    def prepare(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply overrides, validation and defaults to an already-parsed mapping."""
        self.config = config
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
            if key not in current or current[key] is None:
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

        import_config = self.config.get('import') or {}
        if not import_config.get('default_container'):
            errors.append("Missing required import field: default_container")
        mapping = import_config.get('attribute_mapping')
        if not mapping or not isinstance(mapping, dict):
            errors.append("import.attribute_mapping must be a non-empty mapping")

        planning = self.config.get('planning') or {}
        strategy = planning.get('strategy', 'parallel')
        if strategy not in ('parallel', 'sequential'):
            errors.append(f"Unknown planning strategy: {strategy}")

        folders = self.config.get('folders') or {}
        if folders.get('enable_share_provisioning'):
            for field in ['target_server', 'local_path', 'netbios_domain']:
                if not folders.get(field):
                    errors.append(f"Share provisioning enabled but folders.{field} is missing")
            if not (self.config.get('provisioning') or {}).get('base_url'):
                errors.append("Share provisioning enabled but provisioning.base_url is missing")

        groups = self.config.get('group_management') or {}
        if groups.get('class_groups') and groups.get('class_group_template'):
            for problem in template_errors(groups['class_group_template']):
                errors.append(f"group_management.class_group_template: {problem}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        for section, defaults in self.SECTION_DEFAULTS.items():
            section_config = self.config.get(section)
            if section_config is None:
                section_config = self.config[section] = {}
            for key, value in defaults.items():
                section_config.setdefault(key, list(value) if isinstance(value, list) else value)


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


class ImportSettings:
    """
    Attribute view over the import-related configuration sections.

    Built from a loaded configuration dictionary; every section falls back to
    ``ConfigLoader.SECTION_DEFAULTS`` so tests can construct partial settings.
    """

    def __init__(self, import_config: Dict[str, Any],
                 planning: Optional[Dict[str, Any]] = None,
                 execution: Optional[Dict[str, Any]] = None,
                 folders: Optional[Dict[str, Any]] = None,
                 group_management: Optional[Dict[str, Any]] = None):
        defaults = ConfigLoader.SECTION_DEFAULTS
        self.import_config = {**defaults['import'], **(import_config or {})}
        self.planning = {**defaults['planning'], **(planning or {})}
        self.execution = {**defaults['execution'], **(execution or {})}
        self.folders = {**defaults['folders'], **(folders or {})}
        self.group_management = {**defaults['group_management'], **(group_management or {})}

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ImportSettings':
        return cls(
            config.get('import') or {},
            planning=config.get('planning'),
            execution=config.get('execution'),
            folders=config.get('folders'),
            group_management=config.get('group_management'),
        )

    @property
    def default_container(self) -> str:
        return (self.import_config.get('default_container') or '').strip()

    @property
    def attribute_mapping(self) -> Dict[str, str]:
        return dict(self.import_config.get('attribute_mapping') or {})

    @property
    def container_column(self) -> str:
        return self.import_config['container_column']

    @property
    def first_name_column(self) -> str:
        return self.import_config['first_name_column']

    @property
    def last_name_column(self) -> str:
        return self.import_config['last_name_column']

    @property
    def identifier_attribute(self) -> str:
        return self.import_config['identifier_attribute']

    @property
    def max_identifier_length(self) -> int:
        return int(self.import_config['max_identifier_length'])

    @property
    def identifier_attributes(self) -> List[str]:
        return list(self.import_config.get('identifier_attributes') or [])

    @property
    def upn_suffix(self) -> str:
        return self.import_config.get('upn_suffix') or ''

    @property
    def protected_containers(self) -> List[str]:
        return list(self.import_config.get('protected_containers') or [])

    def flag(self, name: str) -> bool:
        """Read a boolean switch from the ``import`` section."""
        return bool(self.import_config.get(name))
