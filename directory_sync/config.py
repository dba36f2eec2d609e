"""
Configuration loading and management for directory sync.

This module reads the directorySync plugin block from YAML, JSON or PHP
files, applies environment overrides for bind passwords, validates the
result and fills in defaults for the application sections (logging,
error handling, snapshot storage). It can also serialize a configuration
back to the same nested shape.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import yaml

from directory_sync.logging_setup import security_logger
from directory_sync.models import ConfigurationError, DirectorySyncConfig, format_errors
from directory_sync.php_config import load_php_config
from directory_sync.validation import ValidationReport, validate_config

logger = logging.getLogger(__name__)

# Where the plugin block may sit inside a configuration file
PLUGIN_PATHS = (
    ('passbolt', 'plugins', 'directorySync'),
    ('plugins', 'directorySync'),
    ('directorySync',),
)

APP_DEFAULTS = {
    'logging': {
        'level': 'INFO',
        'log_dir': 'logs',
        'rotation': 'daily',
        'retention_days': 7,
        'console_output': True,
        'console_level': 'WARNING',
    },
    'error_handling': {
        'max_retries': 3,
        'retry_wait_seconds': 5,
    },
    'snapshot': {
        'path': 'directory-snapshot.json',
    },
}


@dataclass
class LoadedConfig:
    """A validated plugin configuration plus the application settings around it."""

    directory_sync: DirectorySyncConfig
    settings: Dict[str, Any]
    report: ValidationReport = field(default_factory=ValidationReport)
    source: Optional[str] = None

    @property
    def logging(self) -> Dict[str, Any]:
        return self.settings['logging']

    @property
    def error_handling(self) -> Dict[str, Any]:
        return self.settings['error_handling']

    @property
    def snapshot(self) -> Dict[str, Any]:
        return self.settings['snapshot']


def password_env_var(domain_key: str) -> str:
    """Environment variable that overrides a domain's bind password."""
    return "LDAP_" + re.sub(r'[^A-Za-z0-9]', '_', domain_key).upper() + "_PASSWORD"


def read_raw(path: str) -> Any:
    """
    Read a configuration file into nested dicts and lists.

    Raises:
        ConfigurationError: If the file is missing, unreadable or cannot be parsed
    """
    extension = os.path.splitext(path)[1].lower()
    try:
        if extension == '.php':
            return load_php_config(path)
        with open(path, 'r', encoding='utf-8') as f:
            if extension == '.json':
                return json.load(f)
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}")
    except UnicodeDecodeError as e:
        raise ConfigurationError(f"Configuration file {path} is not valid UTF-8: {e}")
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}")


def find_plugin_block(raw: Any) -> Mapping[str, Any]:
    """
    Locate the directorySync mapping inside a raw configuration.

    Raises:
        ConfigurationError: If no known location holds a mapping
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Configuration root must be a mapping")

    for path in PLUGIN_PATHS:
        current = raw
        for key in path:
            if not isinstance(current, Mapping) or key not in current:
                break
            current = current[key]
        else:
            if isinstance(current, Mapping):
                return current
            raise ConfigurationError(f"{'.'.join(path)} must be a mapping")

    raise ConfigurationError(
        "No directorySync block found (expected one of: "
        + ", ".join('.'.join(p) for p in PLUGIN_PATHS) + ")"
    )


class ConfigLoader:
    """Handles loading and validation of the directory sync configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses DIRECTORY_SYNC_CONFIG env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('DIRECTORY_SYNC_CONFIG', 'config.yaml')
        self.raw = {}

    def load(self) -> LoadedConfig:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            LoadedConfig with the validated plugin configuration

        Raises:
            ConfigurationError: If the file is missing, unparseable or invalid
        """
        self.raw = read_raw(self.config_path)
        loaded = self.load_mapping(self.raw)
        loaded.source = self.config_path
        security_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return loaded

    def load_mapping(self, raw: Any) -> LoadedConfig:
        """Same as load() for an already parsed mapping."""
        block = find_plugin_block(raw)
        block = self._apply_env_overrides(block)
        directory_sync = DirectorySyncConfig.from_mapping(block)

        report = validate_config(directory_sync)
        for warning in report.warnings:
            logger.warning(f"Configuration warning: {warning}")
        if report.errors:
            raise ConfigurationError(format_errors("Configuration validation failed", report.errors))

        settings = self._apply_defaults(raw)
        return LoadedConfig(directory_sync=directory_sync, settings=settings, report=report)

    def _apply_env_overrides(self, block: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a copy of the block with bind passwords taken from the environment."""
        block = dict(block)
        ldap = block.get('ldap')
        domains = ldap.get('domains') if isinstance(ldap, Mapping) else None
        if not isinstance(domains, Mapping):
            return block

        overridden = {}
        for key, domain in domains.items():
            env_value = os.getenv(password_env_var(str(key)))
            if env_value and isinstance(domain, Mapping):
                domain = dict(domain)
                domain['password'] = env_value
                logger.debug(f"Applied environment override for domain {key} password")
            overridden[key] = domain

        block['ldap'] = dict(ldap)
        block['ldap']['domains'] = overridden
        return block

    def _apply_defaults(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        """Application sections sitting next to the plugin block, with defaults."""
        settings = {}
        for section, defaults in APP_DEFAULTS.items():
            configured = raw.get(section) or {}
            if not isinstance(configured, Mapping):
                raise ConfigurationError(f"{section} must be a mapping")
            merged = dict(defaults)
            merged.update(configured)
            settings[section] = merged
        return settings


def load_config(config_path: Optional[str] = None) -> LoadedConfig:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def to_document(config: DirectorySyncConfig) -> Dict[str, Any]:
    """Nest the plugin block the way the consuming application expects it."""
    return {'passbolt': {'plugins': {'directorySync': config.to_mapping()}}}


def dump_config(config: DirectorySyncConfig, fmt: str = 'yaml') -> str:
    """
    Serialize a configuration to YAML or JSON.

    Loading the output again yields an equal configuration.
    """
    document = to_document(config)
    if fmt == 'json':
        return json.dumps(document, indent=2)
    if fmt == 'yaml':
        return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
    raise ValueError(f"Unsupported output format: {fmt}")
