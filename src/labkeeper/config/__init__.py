"""Configuration management for labkeeper."""

from .models import (
    BucketConfig,
    CleanupConfig,
    InstanceConfig,
    LoggingConfig,
    NetworkConfig,
    Settings,
    StateConfig,
)
from .parser import DEFAULT_CONFIG_FILE, ENV_OVERRIDES, load_settings

__all__ = [
    "BucketConfig",
    "CleanupConfig",
    "InstanceConfig",
    "LoggingConfig",
    "NetworkConfig",
    "Settings",
    "StateConfig",
    "DEFAULT_CONFIG_FILE",
    "ENV_OVERRIDES",
    "load_settings",
]
