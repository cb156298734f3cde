"""Configuration discovery and parsing helpers."""

from procpilot.lib.config.settings import ProcpilotConfig, config_path, load_config

__all__ = ["ProcpilotConfig", "config_path", "load_config"]
