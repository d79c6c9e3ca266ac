from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar, cast

from hc_httpx.batch import BatchOptions
from hc_httpx.circuit_breaker import CircuitBreakerOptions
from hc_httpx.dedupe import DedupeOptions
from hc_httpx.observability.logging import LOG_FORMAT_CONSOLE, LOG_FORMAT_JSON
from hc_httpx.policies import (
    AuthOptions,
    CacheOptions,
    LoggingOptions,
    RateLimitOptions,
    RefreshOptions,
    RetryOptions,
    SmartTimeoutOptions,
    backoff,
)
from hc_httpx.policies.retry import RetryStrategy
from hc_httpx.request_queue import QueueOptions

T = TypeVar("T")

LEVEL_NAME_TO_INT = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _ensure_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{field_name} must be a mapping")
    return cast(Mapping[str, Any], value)


def _coerce_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise TypeError(f"{field_name} must be a bool")


def _coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an int")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"{field_name} must be an int")


def _coerce_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be a float")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"{field_name} must be a float")


def _coerce_str(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        return value
    return str(value)


def _coerce_str_list(value: Any, field_name: str) -> list[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, Sequence):
        return [_coerce_str(item, field_name) for item in value]
    raise TypeError(f"{field_name} must be a list of strings")


def _coerce_str_map(value: Any, field_name: str) -> dict[str, str]:
    data = _ensure_mapping(value, field_name)
    return {str(key): _coerce_str(val, f"{field_name}.{key}") for key, val in data.items()}


def _coerce_float_map(value: Any, field_name: str) -> dict[str, float]:
    data = _ensure_mapping(value, field_name)
    return {str(key): _coerce_float(val, f"{field_name}.{key}") for key, val in data.items()}


def _coerce_status_codes(value: Any, field_name: str) -> frozenset[int]:
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return frozenset({_coerce_int(value, field_name)})
    if isinstance(value, (Sequence, set, frozenset)):
        return frozenset(_coerce_int(item, field_name) for item in value)
    raise TypeError(f"{field_name} must be a list of status codes")


def _coerce_level(value: Any, field_name: str) -> int:
    if isinstance(value, str) and value.strip().upper() in LEVEL_NAME_TO_INT:
        return LEVEL_NAME_TO_INT[value.strip().upper()]
    return _coerce_int(value, field_name)


def _coerce_logger(value: Any, field_name: str) -> logging.Logger:
    if isinstance(value, logging.Logger):
        return value
    if isinstance(value, str):
        return logging.getLogger(value)
    raise TypeError(f"{field_name} must be a logger name")


def _coerce_eviction(value: Any, field_name: str) -> str:
    normalized = _coerce_str(value, field_name).strip().lower()
    if normalized not in {"insertion", "lru"}:
        raise ValueError(f"{field_name} must be 'insertion' or 'lru'")
    return normalized


def _coerce_log_format(value: Any, field_name: str) -> str:
    normalized = _coerce_str(value, field_name).strip().lower()
    if normalized not in {LOG_FORMAT_JSON, LOG_FORMAT_CONSOLE}:
        raise ValueError(f"{field_name} must be '{LOG_FORMAT_JSON}' or '{LOG_FORMAT_CONSOLE}'")
    return normalized


def _coerce_delay(value: Any, field_name: str) -> Any:
    """A number of milliseconds, or a mapping describing a backoff curve."""
    if callable(value):
        return value
    if isinstance(value, Mapping):
        payload = dict(value)
        strategy = payload.pop("strategy", RetryStrategy.EXPONENTIAL)
        try:
            strategy = RetryStrategy(_coerce_str(strategy, f"{field_name}.strategy").strip().lower())
        except ValueError as exc:
            raise ValueError(f"{field_name}.strategy must be a valid RetryStrategy") from exc
        kwargs = _extract_fields(payload, _BACKOFF_FIELD_SPECS)
        return backoff(strategy, **kwargs)
    return _coerce_float(value, field_name)


FieldSpec = tuple[str, Callable[[Any, str], Any], str]


def _optional(coerce: Callable[[Any, str], Any]) -> Callable[[Any, str], Any]:
    def _wrapped(value: Any, field_name: str) -> Any:
        if value is None:
            return None
        return coerce(value, field_name)

    return _wrapped


def _extract_fields(payload: Mapping[str, Any], specs: Sequence[FieldSpec]) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    for name, coerce, label in specs:
        if name in payload:
            kwargs[name] = coerce(payload[name], label)
    return kwargs


_BACKOFF_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("initial_delay_ms", _coerce_float, "retry.delay_ms.initial_delay_ms"),
    ("multiplier", _coerce_float, "retry.delay_ms.multiplier"),
    ("max_delay_ms", _coerce_float, "retry.delay_ms.max_delay_ms"),
    ("jitter", _coerce_float, "retry.delay_ms.jitter"),
)

_AUTH_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("token", _optional(_coerce_str), "auth.token"),
    ("header_name", _coerce_str, "auth.header_name"),
    ("scheme", _coerce_str, "auth.scheme"),
)

_REFRESH_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("refresh_url", _coerce_str, "refresh_token.refresh_url"),
    ("status_codes", _coerce_status_codes, "refresh_token.status_codes"),
    ("header_name", _coerce_str, "refresh_token.header_name"),
    ("scheme", _coerce_str, "refresh_token.scheme"),
)

_RETRY_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("retries", _coerce_int, "retry.retries"),
    ("delay_ms", _coerce_delay, "retry.delay_ms"),
)

_CACHE_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("max_age_ms", _coerce_float, "cache.max_age_ms"),
    ("max_size", _coerce_int, "cache.max_size"),
    ("eviction", _coerce_eviction, "cache.eviction"),
)

_RATE_LIMIT_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("max_requests", _coerce_int, "rate_limit.max_requests"),
    ("window_ms", _coerce_float, "rate_limit.window_ms"),
)

_LOGGING_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("log_requests", _coerce_bool, "logging.log_requests"),
    ("log_responses", _coerce_bool, "logging.log_responses"),
    ("log_errors", _coerce_bool, "logging.log_errors"),
    ("logger", _optional(_coerce_logger), "logging.logger"),
    ("level", _coerce_level, "logging.level"),
)

_SMART_TIMEOUT_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("default_timeout_ms", _coerce_float, "smart_timeout.default_timeout_ms"),
    ("endpoint_timeouts_ms", _coerce_float_map, "smart_timeout.endpoint_timeouts_ms"),
)

_DEDUPE_FIELD_SPECS: tuple[FieldSpec, ...] = (("ttl_ms", _coerce_float, "dedupe.ttl_ms"),)

_QUEUE_FIELD_SPECS: tuple[FieldSpec, ...] = (("max_concurrent", _coerce_int, "queue.max_concurrent"),)

_CIRCUIT_BREAKER_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("failure_threshold", _coerce_int, "circuit_breaker.failure_threshold"),
    ("reset_timeout_ms", _coerce_float, "circuit_breaker.reset_timeout_ms"),
    ("monitoring_period_ms", _coerce_float, "circuit_breaker.monitoring_period_ms"),
    ("half_open_max_calls", _coerce_int, "circuit_breaker.half_open_max_calls"),
)

_BATCH_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("batch_size", _coerce_int, "batch.batch_size"),
    ("delay_ms", _coerce_float, "batch.delay_ms"),
    ("endpoint", _coerce_str, "batch.endpoint"),
)

# Option type and coercion table per policy name known to the registry.
POLICY_OPTION_SPECS: dict[str, tuple[type, tuple[FieldSpec, ...]]] = {
    "auth": (AuthOptions, _AUTH_FIELD_SPECS),
    "refresh_token": (RefreshOptions, _REFRESH_FIELD_SPECS),
    "retry": (RetryOptions, _RETRY_FIELD_SPECS),
    "cache": (CacheOptions, _CACHE_FIELD_SPECS),
    "rate_limit": (RateLimitOptions, _RATE_LIMIT_FIELD_SPECS),
    "logging": (LoggingOptions, _LOGGING_FIELD_SPECS),
    "smart_timeout": (SmartTimeoutOptions, _SMART_TIMEOUT_FIELD_SPECS),
}


def _build_options(options_type: type[T], specs: Sequence[FieldSpec], value: Any, field_name: str) -> T | None:
    """Coerce known fields and pass the rest (callables) through unchanged."""
    if value is None:
        return None
    if isinstance(value, options_type):
        return value
    data = _ensure_mapping(value, field_name)
    payload = dict(data)
    payload.update(_extract_fields(data, specs))
    try:
        return options_type(**payload)
    except TypeError as exc:
        raise TypeError(f"{field_name}: {exc}") from exc


def build_policy_options(name: str, value: Any) -> Any:
    """Return the options dataclass for policy ``name``.

    Raises:
        KeyError: If ``name`` is not a known policy.
    """
    options_type, specs = POLICY_OPTION_SPECS[name]
    return _build_options(options_type, specs, value, f"policies.{name}")


def _coerce_policies(value: Any, field_name: str) -> dict[str, Any]:
    data = _ensure_mapping(value, field_name)
    policies: dict[str, Any] = {}
    for name, options in data.items():
        if name not in POLICY_OPTION_SPECS:
            raise ValueError(f"{field_name}.{name} is not a known policy")
        built = build_policy_options(name, options if options is not None else {})
        policies[name] = built
    return policies


def _coerce_groups(value: Any, field_name: str) -> dict[str, list[str]]:
    data = _ensure_mapping(value, field_name)
    return {str(name): _coerce_str_list(members, f"{field_name}.{name}") for name, members in data.items()}


def _section(options_type: type[T], specs: Sequence[FieldSpec], label: str) -> Callable[[Any, str], Any]:
    def _wrapped(value: Any, field_name: str) -> Any:
        if value is True:
            return options_type()
        if value is False:
            return None
        return _build_options(options_type, specs, value, label)

    return _wrapped


_CLIENT_FIELD_SPECS: tuple[FieldSpec, ...] = (
    ("base_url", _optional(_coerce_str), "base_url"),
    ("timeout_ms", _optional(_coerce_float), "timeout_ms"),
    ("headers", _coerce_str_map, "headers"),
    ("client_id", _coerce_str, "client_id"),
    ("log_format", _optional(_coerce_log_format), "log_format"),
    ("policies", _coerce_policies, "policies"),
    ("groups", _coerce_groups, "groups"),
    ("enabled_groups", _coerce_str_list, "enabled_groups"),
    ("dedupe", _section(DedupeOptions, _DEDUPE_FIELD_SPECS, "dedupe"), "dedupe"),
    ("queue", _section(QueueOptions, _QUEUE_FIELD_SPECS, "queue"), "queue"),
    (
        "circuit_breaker",
        _section(CircuitBreakerOptions, _CIRCUIT_BREAKER_FIELD_SPECS, "circuit_breaker"),
        "circuit_breaker",
    ),
    ("batch", _section(BatchOptions, _BATCH_FIELD_SPECS, "batch"), "batch"),
)


@dataclass
class ClientConfig:
    """Construction-time settings for ``HttpClient``.

    ``policies`` holds per-policy default options, used whenever a policy is
    enabled without explicit options (through a group, for example).
    ``groups`` are created on construction and ``enabled_groups`` enabled.
    """

    base_url: str | None = None
    timeout_ms: float | None = None
    headers: dict[str, str] = field(default_factory=dict)
    client_id: str = "default"
    log_format: str | None = None
    policies: dict[str, Any] = field(default_factory=dict)
    groups: dict[str, list[str]] = field(default_factory=dict)
    enabled_groups: list[str] = field(default_factory=list)
    dedupe: DedupeOptions | None = None
    queue: QueueOptions | None = None
    circuit_breaker: CircuitBreakerOptions | None = None
    batch: BatchOptions | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ClientConfig":
        if data is None:
            return cls()
        if isinstance(data, cls):
            return data
        payload = _ensure_mapping(data, "config")
        unknown = sorted(set(payload) - {name for name, _, _ in _CLIENT_FIELD_SPECS})
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**_extract_fields(payload, _CLIENT_FIELD_SPECS))

    def __post_init__(self) -> None:
        self.policies = _coerce_policies(self.policies, "policies")
        undefined = [name for name in self.enabled_groups if name not in self.groups]
        if undefined:
            raise ValueError(f"enabled_groups references undefined groups: {', '.join(undefined)}")
