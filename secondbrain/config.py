"""Config loading and validation for secondbrain.

Settings come from secondbrain.config.json, looked up in the current
directory and then in ~/.secondbrain/. SECONDBRAIN_* environment variables
override individual keys after the file is read.
"""

import json
import os
from pathlib import Path
from typing import Any

from db.backends import BACKEND_KINDS


class ConfigError(Exception):
    """Raised when configuration is invalid or missing required fields."""


CONFIG_FILENAME = "secondbrain.config.json"

SEARCH_DIRS = [Path("."), Path("~/.secondbrain")]

REQUIRED_FIELDS = ["db_path"]

PATH_FIELDS = ["db_path", "kv_path"]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ENV_OVERRIDES = {
    "SECONDBRAIN_DB": "db_path",
    "SECONDBRAIN_BACKEND": "backend",
    "SECONDBRAIN_USER": "user_id",
    "SECONDBRAIN_LOG_LEVEL": "log_level",
}

DEFAULTS: dict[str, Any] = {
    "backend": "auto",
    "store_name": "secondbrain",
    "kv_path": "~/.secondbrain/kv.json",
    "user_id": None,
    "log_level": "INFO",
}


def find_config() -> Path | None:
    """First secondbrain.config.json found in SEARCH_DIRS, if any."""
    for directory in SEARCH_DIRS:
        candidate = directory.expanduser() / CONFIG_FILENAME
        if candidate.exists():
            return candidate.resolve()
    return None


def load_config(config_path: str | Path | None = None) -> dict[str, Any]:
    """Load and validate secondbrain.config.json.

    Args:
        config_path: Path to config file. Defaults to the first file found
            by find_config().

    Returns:
        Validated config dict with env overrides and defaults applied and
        paths expanded.

    Raises:
        ConfigError: If file is missing, unreadable, or has invalid content.
    """
    path = Path(config_path) if config_path is not None else find_config()
    if path is None:
        raise ConfigError(
            f"No {CONFIG_FILENAME} found in "
            f"{', '.join(str(d) for d in SEARCH_DIRS)}. "
            f"Run `secondbrain init` to create a starter config."
        )

    config = _read(path)
    _apply_env(config)
    _validate(config)
    for key, default in DEFAULTS.items():
        config.setdefault(key, default)
    _check_values(config)
    for field in PATH_FIELDS:
        if isinstance(config.get(field), str):
            config[field] = str(Path(config[field]).expanduser())
    return config


def _read(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {path}")
    return data


def _apply_env(config: dict[str, Any]) -> None:
    for var, key in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            config[key] = value


def _validate(config: dict[str, Any]) -> None:
    """Validate required fields are present."""
    missing = [f for f in REQUIRED_FIELDS if not config.get(f)]
    if missing:
        raise ConfigError(
            f"Missing required config field(s): {', '.join(missing)}. "
            f"Run `secondbrain init` to create a starter config."
        )


def _check_values(config: dict[str, Any]) -> None:
    if config["backend"] not in BACKEND_KINDS:
        raise ConfigError(
            f"Invalid backend '{config['backend']}'. Expected one of {list(BACKEND_KINDS)}"
        )
    level = str(config["log_level"]).upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f"Invalid log_level '{config['log_level']}'")
    config["log_level"] = level
    if not isinstance(config["store_name"], str) or not config["store_name"]:
        raise ConfigError("store_name must be a non-empty string")
