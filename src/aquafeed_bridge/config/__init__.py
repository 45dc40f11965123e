"""Configuration loading and broker settings for the AquaFeed bridge."""

from .broker import BrokerConfig, build_broker_config, resolve_broker_config
from .config_manager import DEFAULTS, ConfigError, ConfigManager

__all__ = [
    "DEFAULTS",
    "BrokerConfig",
    "ConfigError",
    "ConfigManager",
    "build_broker_config",
    "resolve_broker_config",
]
