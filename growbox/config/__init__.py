"""Configuration module for growbox."""

from growbox.config.loader import get_config_path, load_config, save_config
from growbox.config.schema import AutomationConfig, Config

__all__ = ["AutomationConfig", "Config", "get_config_path", "load_config", "save_config"]
