"""Configuration module for chatpilot."""

from chatpilot.config.loader import get_config_path, load_config, save_config
from chatpilot.config.schema import AutonomousConfig, Config

__all__ = ["AutonomousConfig", "Config", "load_config", "save_config", "get_config_path"]
