"""Preset policy bundles used by ``HttpClient.setup_development`` and
``HttpClient.setup_production``.

Each preset maps a policy name to its default option overrides. Callers pass
a mapping to adjust a preset entry, or ``False`` to leave that policy out.
"""

from __future__ import annotations

from typing import Any, Mapping

from hc_httpx.exceptions import ValidationError
from hc_httpx.policies import throttle_aware_retry_condition

PresetOverride = Mapping[str, Any] | bool | None

COMMON_GROUPS: dict[str, tuple[str, ...]] = {
    "api-calls": ("auth", "retry", "cache"),
    "development": ("logging", "retry"),
    "production": ("auth", "retry", "cache", "rate_limit"),
}

DEVELOPMENT_PRESET: dict[str, dict[str, Any]] = {
    "logging": {"log_requests": True, "log_responses": True, "log_errors": True},
    "retry": {"retries": 3, "delay_ms": 1000},
    "smart_timeout": {"default_timeout_ms": 30_000},
}

PRODUCTION_PRESET: dict[str, dict[str, Any]] = {
    "retry": {"retries": 5, "delay_ms": 1000, "retry_condition": throttle_aware_retry_condition},
    "cache": {"max_age_ms": 5 * 60 * 1000},
    "rate_limit": {"max_requests": 100, "window_ms": 60_000},
    "smart_timeout": {"default_timeout_ms": 60_000},
}


def preset_options(
    preset: Mapping[str, Mapping[str, Any]],
    overrides: Mapping[str, PresetOverride],
) -> dict[str, dict[str, Any]]:
    """Merge ``overrides`` into ``preset``, dropping entries set to False.

    Raises:
        ValidationError: If ``overrides`` names a policy the preset lacks.
    """
    unknown = sorted(set(overrides) - set(preset))
    if unknown:
        raise ValidationError(
            message=f"Unknown preset entries: {', '.join(unknown)}",
            data={"unknown": unknown, "known": sorted(preset)},
        )
    merged: dict[str, dict[str, Any]] = {}
    for name, defaults in preset.items():
        override = overrides.get(name)
        if override is False:
            continue
        merged[name] = {**defaults, **(override if isinstance(override, Mapping) else {})}
    return merged
