"""
Configuration loading and management for directory-sync.

Configuration comes from a YAML file, with secrets optionally taken from
environment variables, and is validated before defaults are applied.
"""

import os
import logging
from typing import Any, Dict, Optional

import yaml

from directory_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)

VALID_SCOPES = ('object', 'base', 'one_level', 'onelevel', 'level', 'subtree')
VALID_DIALECTS = ('generic', 'ldapv3', 'active_directory', 'activedirectory', 'ad', 'msad')
ACTIVE_DIRECTORY_NAMES = ('active_directory', 'activedirectory', 'ad', 'msad')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of the directory configuration."""

    # Environment variable mappings for secrets
    ENV_OVERRIDES = {
        'directory.bind_password': 'DIRECTORY_BIND_PASSWORD',
        'directory.trust_store_password': 'DIRECTORY_TRUST_STORE_PASSWORD',
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

        security_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
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

        directory = self.config.get('directory')
        if not isinstance(directory, dict):
            raise ConfigurationError("Configuration validation failed:\n  - Missing 'directory' section")

        for field in ('host', 'base_dn'):
            if not directory.get(field):
                errors.append(f"Missing required directory field: {field}")

        for field in ('port', 'timeout_ms', 'count_limit'):
            value = directory.get(field)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                errors.append(f"Directory field {field} must be an integer")

        scope = directory.get('scope')
        if scope is not None and str(scope).lower().replace('-', '_') not in VALID_SCOPES:
            errors.append(f"Invalid directory scope: {scope}")

        dialect = directory.get('dialect')
        if dialect is not None and str(dialect).lower().replace('-', '_') not in VALID_DIALECTS:
            errors.append(f"Invalid directory dialect: {dialect}")

        attribute_map = directory.get('attribute_map')
        if attribute_map is not None and not isinstance(attribute_map, dict):
            errors.append("Directory attribute_map must be a mapping")

        if directory.get('bind_dn') and not directory.get('bind_password'):
            errors.append("Missing bind_password for bind_dn (set DIRECTORY_BIND_PASSWORD)")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        directory = self.config['directory']
        dialect = str(directory.get('dialect', 'generic')).lower().replace('-', '_')
        directory_defaults = {
            'port': None,
            'secure': False,
            'trust_store': None,
            'scope': 'subtree',
            'count_limit': -1,
            'pooling': False,
            'timeout_ms': 10000,
            'dialect': 'generic',
            'user_id_attribute': 'sAMAccountName' if dialect in ACTIVE_DIRECTORY_NAMES else 'uid',
            'attribute_map': {},
        }
        for key, value in directory_defaults.items():
            directory.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)


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
