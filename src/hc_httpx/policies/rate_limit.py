"""Sliding-window admission control.

Rejected requests are not queued or delayed; the caller receives
``RateLimitExceeded`` and decides what to do. ``data["retry_after_ms"]``
tells it when the oldest admitted request leaves the window.

Example:
    client.use_rate_limit(RateLimitOptions(max_requests=2, window_ms=1000))
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque

from hc_httpx.exceptions import RateLimitExceeded
from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitOptions:
    """Configuration for RateLimitPolicy.

    Attributes:
        max_requests: Requests admitted per window.
        window_ms: Window length.
        on_limit: Called with the error and the rejected config.
    """

    max_requests: int = 100
    window_ms: float = 60_000
    on_limit: Callable[[RateLimitExceeded, RequestConfig], Any] | None = None


class SlidingWindow:
    """Timestamps of admitted requests within a trailing window (milliseconds)."""

    def __init__(self, max_requests: int, window_ms: float) -> None:
        self.max_requests = max(0, int(max_requests))
        self.window_ms = max(0.0, float(window_ms))
        self._stamps: Deque[float] = deque()

    def prune(self, now_ms: float) -> None:
        while self._stamps and now_ms - self._stamps[0] >= self.window_ms:
            self._stamps.popleft()

    def try_admit(self, now_ms: float) -> bool:
        self.prune(now_ms)
        if len(self._stamps) >= self.max_requests:
            return False
        self._stamps.append(now_ms)
        return True

    def retry_after_ms(self, now_ms: float) -> float:
        if not self._stamps:
            return 0.0
        return max(0.0, self._stamps[0] + self.window_ms - now_ms)

    def clear(self) -> None:
        self._stamps.clear()

    def __len__(self) -> int:
        return len(self._stamps)


class RateLimitPolicy(InterceptorPolicy):
    name = "rate_limit"
    phases = (Phase.REQUEST,)
    options_type = RateLimitOptions

    def __init__(self, context: Any, options: RateLimitOptions | None = None) -> None:
        super().__init__(context, options)
        self.window = SlidingWindow(self.options.max_requests, self.options.window_ms)
        self.rejected = 0

    def on_request(self, config: RequestConfig) -> None:
        now_ms = self.context.now_ms()
        if self.window.try_admit(now_ms):
            return None
        self.rejected += 1
        error = RateLimitExceeded(
            data={
                "retry_after_ms": self.window.retry_after_ms(now_ms),
                "max_requests": self.window.max_requests,
                "window_ms": self.window.window_ms,
            }
        )
        logger.warning("Rate limit exceeded for %s %s", config.method, config.url)
        if self.options.on_limit is not None:
            try:
                self.options.on_limit(error, config)
            except Exception:
                logger.warning("on_limit callback raised", exc_info=True)
        raise error

    def reset(self) -> None:
        self.window.clear()

    def stats(self) -> dict[str, Any]:
        return {"in_window": len(self.window), "rejected": self.rejected}
