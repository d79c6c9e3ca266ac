"""Predicate builders for conditional interceptors.

Every builder returns ``Callable[[RequestConfig], bool]``:

    manager.add_conditional_interceptor(
        "auth",
        condition=all_of(url_matches("/api/"), negate(is_public_endpoint())),
    )
"""

from __future__ import annotations

import json
import os
import re
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Pattern

from hc_httpx.types import RequestConfig

Condition = Callable[[RequestConfig], bool]

DEFAULT_PUBLIC_PATHS = ("/login", "/register", "/health", "/public")
ENVIRONMENT_VARIABLE = "HC_HTTPX_ENV"


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def url_matches(patterns: str | Pattern[str] | Iterable[str | Pattern[str]]) -> Condition:
    """Substring match for strings, ``search`` for compiled patterns."""
    compiled = _as_list(patterns)

    def condition(config: RequestConfig) -> bool:
        url = config.url or ""
        for pattern in compiled:
            if isinstance(pattern, re.Pattern):
                if pattern.search(url):
                    return True
            elif pattern in url:
                return True
        return False

    return condition


def method_matches(methods: str | Iterable[str]) -> Condition:
    wanted = {method.upper() for method in _as_list(methods)}
    return lambda config: (config.method or "GET").upper() in wanted


def header_matches(expected: Mapping[str, str | Pattern[str] | Callable[[str | None], bool]]) -> Condition:
    """Every named header must equal, match, or satisfy its expectation."""

    def condition(config: RequestConfig) -> bool:
        headers = {name.lower(): value for name, value in config.headers.items()}
        for name, rule in expected.items():
            actual = headers.get(name.lower())
            if isinstance(rule, re.Pattern):
                if actual is None or not rule.search(actual):
                    return False
            elif callable(rule):
                if not rule(actual):
                    return False
            elif actual != rule:
                return False
        return True

    return condition


def has_data_keys(keys: str | Iterable[str]) -> Condition:
    wanted = _as_list(keys)

    def condition(config: RequestConfig) -> bool:
        data = config.data
        if not isinstance(data, Mapping):
            return False
        return any(key in data for key in wanted)

    return condition


def environment_matches(environments: str | Iterable[str], *, variable: str = ENVIRONMENT_VARIABLE) -> Condition:
    """Compare ``os.environ[variable]`` (default ``development``) at call time."""
    wanted = set(_as_list(environments))
    return lambda config: os.getenv(variable, "development") in wanted


def time_range(start_hour: int, end_hour: int, *, now: Callable[[], datetime] = datetime.now) -> Condition:
    """Inclusive hour range; ``start_hour > end_hour`` wraps past midnight."""

    def condition(config: RequestConfig) -> bool:
        hour = now().hour
        if start_hour <= end_hour:
            return start_hour <= hour <= end_hour
        return hour >= start_hour or hour <= end_hour

    return condition


def is_public_endpoint(paths: Iterable[str] = DEFAULT_PUBLIC_PATHS) -> Condition:
    return url_matches(list(paths))


def request_size_below(max_bytes: int) -> Condition:
    """Body size in bytes, JSON-encoded for structured data."""

    def condition(config: RequestConfig) -> bool:
        data = config.data
        if data is None:
            return True
        if isinstance(data, bytes):
            size = len(data)
        elif isinstance(data, str):
            size = len(data.encode("utf-8"))
        else:
            size = len(json.dumps(data, default=str).encode("utf-8"))
        return size <= max_bytes

    return condition


def all_of(*conditions: Condition) -> Condition:
    return lambda config: all(condition(config) for condition in conditions)


def any_of(*conditions: Condition) -> Condition:
    return lambda config: any(condition(config) for condition in conditions)


def negate(condition: Condition) -> Condition:
    return lambda config: not condition(config)


is_get_request = method_matches("GET")
is_write_request = method_matches(["POST", "PUT", "PATCH", "DELETE"])
is_api_call = url_matches("/api/")
requires_auth = negate(is_public_endpoint())
