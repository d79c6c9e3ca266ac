"""Interceptor policies known to the client registry."""

from __future__ import annotations

from hc_httpx.policies.auth import AuthOptions, AuthPolicy
from hc_httpx.policies.base import InterceptorPolicy, PolicySlot, install
from hc_httpx.policies.cache import CacheOptions, CachePolicy, ResponseCache, default_cache_key
from hc_httpx.policies.logging import LoggingOptions, LoggingPolicy
from hc_httpx.policies.rate_limit import RateLimitOptions, RateLimitPolicy, SlidingWindow
from hc_httpx.policies.refresh import RefreshOptions, RefreshTokenPolicy, TokenPair, parse_token_response
from hc_httpx.policies.retry import (
    RetryOptions,
    RetryPolicy,
    RetryStrategy,
    backoff,
    default_retry_condition,
    throttle_aware_retry_condition,
)
from hc_httpx.policies.timeout import SmartTimeoutOptions, SmartTimeoutPolicy

POLICY_TYPES: dict[str, type[InterceptorPolicy]] = {
    policy.name: policy
    for policy in (
        AuthPolicy,
        RefreshTokenPolicy,
        RetryPolicy,
        CachePolicy,
        RateLimitPolicy,
        LoggingPolicy,
        SmartTimeoutPolicy,
    )
}

__all__ = [
    "POLICY_TYPES",
    "AuthOptions",
    "AuthPolicy",
    "CacheOptions",
    "CachePolicy",
    "InterceptorPolicy",
    "LoggingOptions",
    "LoggingPolicy",
    "PolicySlot",
    "RateLimitOptions",
    "RateLimitPolicy",
    "RefreshOptions",
    "RefreshTokenPolicy",
    "ResponseCache",
    "RetryOptions",
    "RetryPolicy",
    "RetryStrategy",
    "SlidingWindow",
    "SmartTimeoutOptions",
    "SmartTimeoutPolicy",
    "TokenPair",
    "backoff",
    "default_cache_key",
    "default_retry_condition",
    "install",
    "parse_token_response",
    "throttle_aware_retry_condition",
]
