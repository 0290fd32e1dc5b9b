"""Load and save the JSON config file."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from feedback_bridge.config.schema import Config
from feedback_bridge.utils.helpers import ensure_dir, get_data_path


def get_data_dir() -> Path:
    """Data directory holding config, sessions and logs."""
    return get_data_path()


def get_config_path() -> Path:
    """Path of the JSON config file."""
    return get_data_dir() / "config.json"


def load_config(path: Path | None = None) -> Config:
    """Load config from disk, falling back to defaults + environment.

    Environment variables (``FEEDBACK_BRIDGE_*``) override file values.
    """
    config_path = path or get_config_path()
    if not config_path.exists():
        return Config()

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read config {config_path}: {e}; using defaults")
        return Config()

    if not isinstance(data, dict):
        logger.warning(f"Config {config_path} is not a JSON object; using defaults")
        return Config()

    try:
        file_config = Config.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid config {config_path}: {e}; using defaults")
        return Config()

    # Re-run settings resolution so env vars still win over the file.
    env_config = Config()
    merged = file_config.model_dump()
    for section, values in env_config.model_dump(exclude_defaults=True).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return Config.model_validate(merged)


def save_config(config: Config, path: Path | None = None) -> Path:
    """Write config as pretty JSON and return the path written."""
    config_path = path or get_config_path()
    ensure_dir(config_path.parent)
    config_path.write_text(
        json.dumps(config.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )
    return config_path
