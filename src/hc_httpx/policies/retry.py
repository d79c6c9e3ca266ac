"""Retry of failed requests with a configurable delay.

The attempt counter lives in ``config.meta["retry_count"]`` so it survives
the replay: a request that has already been retried ``retries`` times is
rejected without touching the transport again.
"""

from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable

from hc_httpx.exceptions import (
    CircuitBreakerOpenError,
    RateLimitExceeded,
    RequestCancelledError,
    TransportTimeoutError,
    config_of,
    status_of,
)
from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig, Response

logger = logging.getLogger(__name__)

RETRY_COUNT = "retry_count"

DelayFn = Callable[[int], float]


class RetryStrategy(str, enum.Enum):
    """Retry delay calculation strategies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


def default_retry_condition(error: BaseException) -> bool:
    """Retry network failures (no response) and 5xx responses."""
    if isinstance(error, (RateLimitExceeded, CircuitBreakerOpenError, RequestCancelledError)):
        return False
    if config_of(error) is None:
        return False
    response = getattr(error, "response", None)
    if response is None:
        return True
    status = getattr(response, "status", 0)
    return 500 <= status <= 599


def throttle_aware_retry_condition(error: BaseException) -> bool:
    """Retry timeouts, 5xx and 429 responses."""
    if isinstance(error, TransportTimeoutError):
        return True
    status = status_of(error)
    return status is not None and (status >= 500 or status == 429)


def backoff(
    strategy: RetryStrategy | str = RetryStrategy.EXPONENTIAL,
    *,
    initial_delay_ms: float = 100,
    multiplier: float = 2.0,
    max_delay_ms: float = 10000,
    jitter: float = 0.0,
) -> DelayFn:
    """Build a delay function mapping the retry number (1-based) to milliseconds."""
    strategy = RetryStrategy(strategy)
    initial = max(0.0, float(initial_delay_ms))
    ceiling = max(initial, float(max_delay_ms))
    multiplier = max(1.0, float(multiplier))
    jitter = max(0.0, min(1.0, float(jitter)))

    def compute(attempt: int) -> float:
        if strategy == RetryStrategy.EXPONENTIAL:
            base_ms = initial * (multiplier ** max(0, attempt - 1))
        elif strategy == RetryStrategy.LINEAR:
            base_ms = initial * attempt
        else:
            base_ms = initial
        base_ms = min(ceiling, base_ms)
        if jitter > 0 and base_ms > 0:
            base_ms = max(0.0, base_ms + (random.random() * 2 - 1) * jitter * base_ms)
        return base_ms

    return compute


@dataclass(frozen=True, slots=True)
class RetryOptions:
    """Configuration for RetryPolicy.

    Attributes:
        retries: Maximum number of replays per request.
        delay_ms: Fixed delay, or a function of the retry number.
        retry_condition: Decides whether an error is retryable.
    """

    retries: int = 3
    delay_ms: float | DelayFn = 1000
    retry_condition: Callable[[BaseException], bool] = default_retry_condition


class RetryPolicy(InterceptorPolicy):
    name = "retry"
    phases = (Phase.RESPONSE,)
    options_type = RetryOptions

    def __init__(self, context: Any, options: RetryOptions | None = None) -> None:
        super().__init__(context, options)
        self.retried = 0

    def delay_for(self, attempt: int) -> float:
        delay = self.options.delay_ms
        if callable(delay):
            delay = delay(attempt)
        return max(0.0, float(delay))

    async def on_response_error(self, error: Exception) -> Response | None:
        config = config_of(error)
        if not isinstance(config, RequestConfig):
            return None
        count = int(config.meta.get(RETRY_COUNT) or 0)
        config.meta[RETRY_COUNT] = count
        if count >= self.options.retries or not self.options.retry_condition(error):
            return None

        count += 1
        config.meta[RETRY_COUNT] = count
        delay_ms = self.delay_for(count)
        logger.info(
            "Retrying %s %s (%d/%d) in %.0fms after %s",
            config.method,
            config.url,
            count,
            self.options.retries,
            delay_ms,
            type(error).__name__,
        )
        if delay_ms > 0:
            await self.context.sleep(delay_ms / 1000.0)
        self.retried += 1
        return await self.context.engine.request(config)

    def stats(self) -> dict[str, Any]:
        return {"retried": self.retried}
