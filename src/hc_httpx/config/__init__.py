"""Configuration helpers."""

from .loader import (
    ConfigError,
    get_default_config_path,
    load_config,
    load_config_with_overrides,
    load_default_config,
    parse_config,
)
from .models import ClientConfig, build_policy_options

__all__ = [
    "ClientConfig",
    "ConfigError",
    "build_policy_options",
    "get_default_config_path",
    "load_config",
    "load_config_with_overrides",
    "load_default_config",
    "parse_config",
]
