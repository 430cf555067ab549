#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Configuration Module

This module handles loading, validating, and providing access to the client
configuration. It supports JSON and YAML files, `.env` files and environment
variable overrides.
"""

import os
import json
import copy
from pathlib import Path
from typing import Any, Dict, Optional, ClassVar

import yaml
from dotenv import load_dotenv

from common.exceptions import ConfigurationError
from common.constants import (
    CONFIG_SCHEMA_VERSION, DEFAULT_CONFIG_PATH, DEFAULT_STORE_PATH, ENV_PREFIX,
    DEFAULT_APP_ID, DERIV_WS_ENDPOINT, DEFAULT_LANGUAGE, DEFAULT_LOG_LEVEL, LOG_LEVELS,
    DEFAULT_CONNECT_TIMEOUT, DEFAULT_REQUEST_TIMEOUT, DEFAULT_RECONNECT_BASE_DELAY,
    DEFAULT_RECONNECT_FACTOR, MAX_RECONNECT_DELAY, DEFAULT_PING_INTERVAL,
    DEFAULT_FORGET_TIMEOUT, DEFAULT_SWITCH_SETTLE_DELAY, TICK_BUFFER_SIZE,
    DUPLICATE_WINDOW_MS, REPEAT_WINDOW_MS, DEFAULT_PIP_DECIMALS,
    DEFAULT_HISTORY_COUNT, SNAPSHOT_MAX_AGE,
)

# Load environment variables from .env file if it exists
load_dotenv()

# Default configurations
DEFAULT_CONFIG = {
    "schema_version": CONFIG_SCHEMA_VERSION,
    "deriv": {
        "app_id": DEFAULT_APP_ID,
        "endpoint": DERIV_WS_ENDPOINT,
        "language": DEFAULT_LANGUAGE,
    },
    "connection": {
        "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
        "request_timeout": DEFAULT_REQUEST_TIMEOUT,
        "auto_reconnect": True,
        "reconnect_base_delay": DEFAULT_RECONNECT_BASE_DELAY,
        "reconnect_factor": DEFAULT_RECONNECT_FACTOR,
        "max_reconnect_delay": MAX_RECONNECT_DELAY,
        "max_reconnect_attempts": None,  # unbounded
        "ping_interval": DEFAULT_PING_INTERVAL,
        "forget_timeout": DEFAULT_FORGET_TIMEOUT,
        "switch_settle_delay": DEFAULT_SWITCH_SETTLE_DELAY,
    },
    "ticks": {
        "buffer_size": TICK_BUFFER_SIZE,
        "duplicate_window_ms": DUPLICATE_WINDOW_MS,
        "repeat_window_ms": REPEAT_WINDOW_MS,
        "default_pip_decimals": DEFAULT_PIP_DECIMALS,
        "history_count": DEFAULT_HISTORY_COUNT,
        "snapshot_max_age": SNAPSHOT_MAX_AGE,
    },
    "storage": {
        "backend": "memory",
        "path": DEFAULT_STORE_PATH,
    },
    "logging": {
        "level": DEFAULT_LOG_LEVEL,
        "file": None,
        "max_size": 10485760,  # 10MB
        "backup_count": 5,
        "json": False,
        "console": True,
    },
}

STORAGE_BACKENDS = ("memory", "file")


class Config:
    """Configuration container with validation and access methods."""

    data: Dict[str, Any] = None
    _loaded_config: ClassVar[Optional['Config']] = None

    def __init__(self, data: Dict[str, Any] = None):
        """
        Initialize configuration with provided data or defaults.

        Sections missing from `data` are filled in from DEFAULT_CONFIG.

        Args:
            data: Configuration data dictionary
        """
        self.data = copy.deepcopy(DEFAULT_CONFIG)
        if data:
            _deep_merge(self.data, copy.deepcopy(data))
        self._environment_override()

    def __getattr__(self, name: str) -> Any:
        """
        Allow attribute-style access to configuration sections.

        Raises:
            AttributeError: If section doesn't exist
        """
        data = self.__dict__.get("data") or {}
        if name in data:
            return data[name]
        raise AttributeError(f"Configuration has no section '{name}'")

    def get(self, path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation path.

        Args:
            path: Configuration path (e.g. "connection.ping_interval")
            default: Default value if path doesn't exist

        Returns:
            Configuration value or default
        """
        current = self.data
        for part in path.split('.'):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def set(self, path: str, value: Any) -> None:
        """
        Set configuration value using dot notation path.
        """
        parts = path.split('.')
        current = self.data

        for part in parts[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = value

    def _environment_override(self) -> None:
        """
        Override configuration with environment variables.

        Environment variables should be in the format:
        DERIVDESK_SECTION_KEY=value

        For example:
        DERIVDESK_DERIV_APP_ID=12345
        DERIVDESK_CONNECTION_PING_INTERVAL=15
        """
        for env_var, value in os.environ.items():
            if not env_var.startswith(ENV_PREFIX):
                continue
            remainder = env_var[len(ENV_PREFIX):].lower()
            section, _, key = remainder.partition("_")
            if not key or section not in self.data or not isinstance(self.data[section], dict):
                continue
            self.set(f"{section}.{key}", _coerce(value))

    def validate(self) -> bool:
        """
        Validate configuration for required fields and appropriate values.

        Raises:
            ConfigurationError: If validation fails
        """
        schema_version = self.data.get("schema_version")
        if schema_version != CONFIG_SCHEMA_VERSION:
            raise ConfigurationError(
                f"Configuration schema version mismatch. Expected {CONFIG_SCHEMA_VERSION}, got {schema_version}."
            )

        deriv = self.data.get("deriv", {})
        if not str(deriv.get("app_id") or "").strip():
            raise ConfigurationError("Deriv app_id must be provided")
        endpoint = deriv.get("endpoint") or ""
        if not endpoint.startswith(("ws://", "wss://")):
            raise ConfigurationError(f"Deriv endpoint must be a WebSocket URL, got '{endpoint}'")

        connection = self.data.get("connection", {})
        for key in ("connect_timeout", "request_timeout", "ping_interval", "forget_timeout"):
            if not _positive(connection.get(key)):
                raise ConfigurationError(f"connection.{key} must be a positive number")
        if not _positive(connection.get("reconnect_base_delay")):
            raise ConfigurationError("connection.reconnect_base_delay must be a positive number")
        factor = connection.get("reconnect_factor")
        if not isinstance(factor, (int, float)) or factor < 1:
            raise ConfigurationError("connection.reconnect_factor must be >= 1")
        if (connection.get("max_reconnect_delay") or 0) < connection.get("reconnect_base_delay"):
            raise ConfigurationError("connection.max_reconnect_delay must not be below the base delay")
        attempts = connection.get("max_reconnect_attempts")
        if attempts is not None and (not isinstance(attempts, int) or attempts < 0):
            raise ConfigurationError("connection.max_reconnect_attempts must be null or a non-negative integer")
        settle = connection.get("switch_settle_delay")
        if not isinstance(settle, (int, float)) or settle < 0:
            raise ConfigurationError("connection.switch_settle_delay must be >= 0")

        ticks = self.data.get("ticks", {})
        for key in ("buffer_size", "history_count"):
            value = ticks.get(key)
            if not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"ticks.{key} must be a positive integer")
        duplicate_ms = ticks.get("duplicate_window_ms")
        repeat_ms = ticks.get("repeat_window_ms")
        if not _positive(duplicate_ms) or not _positive(repeat_ms):
            raise ConfigurationError("ticks duplicate and repeat windows must be positive")
        if repeat_ms < duplicate_ms:
            raise ConfigurationError("ticks.repeat_window_ms must not be below ticks.duplicate_window_ms")
        decimals = ticks.get("default_pip_decimals")
        if not isinstance(decimals, int) or not 0 <= decimals <= 10:
            raise ConfigurationError("ticks.default_pip_decimals must be an integer between 0 and 10")

        storage = self.data.get("storage", {})
        if storage.get("backend") not in STORAGE_BACKENDS:
            raise ConfigurationError(f"Invalid storage backend: {storage.get('backend')}")
        if storage.get("backend") == "file" and not storage.get("path"):
            raise ConfigurationError("storage.path must be provided for the file backend")

        level = str(self.data.get("logging", {}).get("level", "")).upper()
        if level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid logging level: {level}")

        return True

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    def to_json(self, pretty: bool = False) -> str:
        indent = 2 if pretty else None
        return json.dumps(self.data, indent=indent)

    def save(self, path: str, format: str = "json") -> None:
        """
        Save configuration to file.

        Args:
            path: File path
            format: File format (json, yaml)

        Raises:
            ConfigurationError: If format is unsupported or save fails
        """
        if format.lower() not in ("json", "yaml"):
            raise ConfigurationError(f"Unsupported configuration format: {format}")
        try:
            with open(path, 'w') as f:
                if format.lower() == "json":
                    json.dump(self.data, f, indent=2)
                else:
                    yaml.safe_dump(self.data, f, default_flow_style=False)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration: {str(e)}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        return cls(data)

    @classmethod
    def from_json(cls, json_str: str) -> 'Config':
        """
        Create configuration from JSON string.

        Raises:
            ConfigurationError: If JSON parsing fails
        """
        try:
            return cls(json.loads(json_str))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON: {str(e)}")

    @classmethod
    def from_yaml(cls, yaml_str: str) -> 'Config':
        """
        Create configuration from YAML string.

        Raises:
            ConfigurationError: If YAML parsing fails
        """
        try:
            return cls(yaml.safe_load(yaml_str) or {})
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {str(e)}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


def _coerce(value: str) -> Any:
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none"):
        return None
    if value.isdigit():
        return int(value)
    if value.replace(".", "", 1).isdigit() and value.count(".") == 1:
        return float(value)
    return value


def _positive(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def load_config(path: str = None) -> Config:
    """
    Load configuration from file.

    A missing file is created with the default configuration.

    Raises:
        ConfigurationError: If file can't be loaded or parsed
    """
    path = Path(path or DEFAULT_CONFIG_PATH)
    ext = path.suffix.lower()
    if ext not in ('.json', '.yml', '.yaml'):
        raise ConfigurationError(f"Unsupported configuration file format: {ext}")

    try:
        with open(path, 'r') as f:
            content = f.read()
    except FileNotFoundError:
        config = Config()
        if path.parent and str(path.parent) not in ("", "."):
            os.makedirs(path.parent, exist_ok=True)
        config.save(str(path), "json" if ext == ".json" else "yaml")
        Config._loaded_config = config
        return config
    except OSError as e:
        raise ConfigurationError(f"Failed to load configuration: {str(e)}")

    config = Config.from_json(content) if ext == '.json' else Config.from_yaml(content)
    Config._loaded_config = config
    return config


def save_config(config: Config, path: str = None) -> None:
    """
    Save configuration to file, choosing the format from the extension.
    """
    if path is None:
        path = DEFAULT_CONFIG_PATH
    format = "json" if path.endswith(".json") else "yaml"
    config.save(path, format)
