"""Configuration loading."""

import json
from pathlib import Path

from loguru import logger

from growbox.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".growbox" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from a JSON file, falling back to defaults.

    Environment variables (``GROWBOX_...``) still apply on top of defaults
    when the file is missing or unreadable.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Config.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Failed to load config from {}: {}", path, e)
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to a JSON file (camelCase keys)."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
