"""Configuration loading for authbroker."""

from authbroker.config.config import (
    DEFAULT_CONFIG_FILE,
    AuthBrokerConfig,
    load_config,
    load_yaml,
)

__all__ = [
    "AuthBrokerConfig",
    "load_config",
    "load_yaml",
    "DEFAULT_CONFIG_FILE",
]
