from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .models import ClientConfig


class ConfigError(RuntimeError):
    """Raised when configuration loading fails."""


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

CONFIG_PATH_ENV = "HC_HTTPX_CONFIG"


def get_default_config_path() -> Path | None:
    """Return the first default config path that exists."""
    env_path = os.getenv(CONFIG_PATH_ENV)
    candidates = [Path(env_path).expanduser()] if env_path else []
    candidates += [
        Path.cwd() / "hc_httpx.yaml",
        Path.cwd() / "hc_httpx.yml",
        Path.home() / ".hc_httpx.yaml",
        Path.home() / ".hc_httpx.yml",
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_default_config() -> ClientConfig:
    """Load the default config file into ClientConfig."""
    path = get_default_config_path()
    if path is None:
        raise ConfigError("No default config file found")
    return load_config(path)


def load_config(path: str | Path | None) -> ClientConfig:
    """Load a YAML config file into ClientConfig."""
    if not path:
        return load_default_config()
    data = _load_config_mapping(path)
    return _build_config(data, f"Failed to build config from {path}")


def load_config_with_overrides(base_path: str | Path, *override_paths: str | Path) -> ClientConfig:
    """Load a base config file and apply one or more override files."""
    merged = _load_config_mapping(base_path)
    for override in override_paths:
        merged = _merge_mapping(merged, _load_config_mapping(override))
    return _build_config(merged, "Failed to build config with overrides")


def parse_config(content: str) -> ClientConfig:
    """Build ClientConfig from YAML text."""
    try:
        data = _parse_yaml_with_env(content)
    except ConfigError:
        raise
    except Exception as exc:
        raise ConfigError("Failed to parse config") from exc
    return _build_config(_normalize_config_root(data), "Failed to build config")


def _build_config(data: Mapping[str, Any], failure: str) -> ClientConfig:
    try:
        return ClientConfig.from_dict(data)
    except (TypeError, ValueError, KeyError) as exc:
        raise ConfigError(f"{failure}: {exc}") from exc


def _load_config_mapping(path: str | Path) -> dict[str, Any]:
    config_path = Path(path).expanduser()
    if config_path.suffix.lower() not in {".yaml", ".yml"}:
        raise ConfigError(f"Unsupported config file type: {config_path.suffix}")
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        content = config_path.read_text(encoding="utf-8")
        data = _parse_yaml_with_env(content)
    except ConfigError:
        raise
    except Exception as exc:
        raise ConfigError(f"Failed to load config file: {config_path}") from exc
    return _normalize_config_root(data)


def _parse_yaml_with_env(content: str) -> Mapping[str, Any]:
    parsed = yaml.safe_load(content) or {}
    if not isinstance(parsed, Mapping):
        raise ConfigError("Config file must parse to a mapping")
    return _expand_env_in_data(parsed)


def _expand_env_in_data(value: Any) -> Any:
    if isinstance(value, str):
        return _expand_env_value(value)
    if isinstance(value, Mapping):
        return {key: _expand_env_in_data(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_expand_env_in_data(item) for item in value]
    return value


def _expand_env_value(value: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(name)
        if env_value is None or env_value == "":
            if default is None:
                raise ConfigError(f"Environment variable '{name}' is not set and no default provided")
            return default
        return env_value

    return _ENV_PATTERN.sub(replace, value)


def _merge_mapping(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], Mapping) and isinstance(value, Mapping):
            merged[key] = _merge_mapping(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize_config_root(data: Mapping[str, Any]) -> dict[str, Any]:
    if "hc_httpx" not in data:
        return dict(data)
    nested = data["hc_httpx"]
    if not isinstance(nested, Mapping):
        raise ConfigError("hc_httpx section must be a mapping")
    merged = dict(nested)
    for key, value in data.items():
        if key != "hc_httpx":
            merged[key] = value
    return merged
