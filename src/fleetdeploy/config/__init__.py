"""Configuration management for fleetdeploy."""

from .models import (
    SSHConfig,
    ComposeConfig,
    TimeoutConfig,
    RetryConfig,
    SecretsConfig,
    FleetConfig,
)
from .parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE

__all__ = [
    "SSHConfig",
    "ComposeConfig",
    "TimeoutConfig",
    "RetryConfig",
    "SecretsConfig",
    "FleetConfig",
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
]
