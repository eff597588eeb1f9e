"""
Application configuration for backuply.

Settings are stored as YAML in ``config.yaml`` inside the application data
directory. The directory can be overridden with the BACKUPLY_CONFIG_DIR
environment variable. Only two settings are used by the engine:

    db:
      path: <where the record store document lives>
    log:
      level: INFO
"""

import os
import sys
import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .exceptions import ConfigError

PACKAGE_NAME = "backuply"
CONFIG_FILE_NAME = "config.yaml"
DB_FILE_NAME = "backup_data.json"
CONFIG_DIR_ENV = "BACKUPLY_CONFIG_DIR"

DB_PATH_KEY = "db.path"
LOG_LEVEL_KEY = "log.level"

LOG_DEBUG = "DEBUG"
LOG_INFO = "INFO"
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def get_app_data_path() -> Path:
    """Platform specific directory for backuply's own files."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / PACKAGE_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / PACKAGE_NAME
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / PACKAGE_NAME


def get_config_dir(config_dir: Optional[str] = None) -> Path:
    if config_dir:
        return Path(config_dir)
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir)
    return get_app_data_path()


def default_settings(config_dir: Path) -> Dict[str, Any]:
    return {
        "db": {"path": str(config_dir / DB_FILE_NAME)},
        "log": {"level": LOG_INFO},
    }


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class AppConfig:
    """Key/value settings addressed with dotted keys such as ``db.path``."""

    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = get_config_dir(config_dir)
        self.path = self.config_dir / CONFIG_FILE_NAME
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        defaults = default_settings(self.config_dir)
        if not self.path.exists():
            # First run: persist the defaults so users can find and edit them.
            self._save(defaults)
            return defaults
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {self.path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Could not read config file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.path} must contain a mapping")
        return _merge(defaults, data)

    def _save(self, data: Dict[str, Any]) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise ConfigError(f"Could not write config file {self.path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a dotted key and write the whole configuration back to disk."""
        if key == LOG_LEVEL_KEY:
            value = validate_log_level(value)
        parts = key.split(".")
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        self._save(self._data)

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def db_path(self) -> str:
        return str(self.get(DB_PATH_KEY))

    @property
    def log_level(self) -> str:
        return validate_log_level(self.get(LOG_LEVEL_KEY, LOG_INFO))


def validate_log_level(level: Any) -> str:
    normalized = str(level).upper()
    if normalized not in VALID_LOG_LEVELS:
        raise ConfigError(
            f"Invalid log level: {level}. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return normalized
