from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from hc_httpx.exceptions import TransportTimeoutError, config_of
from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig
from hc_httpx.utils.async_utils import call_maybe_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SmartTimeoutOptions:
    """Configuration for SmartTimeoutPolicy.

    Attributes:
        default_timeout_ms: Timeout for requests matching no endpoint entry.
        endpoint_timeouts_ms: Keys are ``"METHOD url"`` or a bare ``url``; the
            method-qualified key wins.
        on_timeout: Called with the timeout error and its config.
    """

    default_timeout_ms: float = 5000
    endpoint_timeouts_ms: Mapping[str, float] = field(default_factory=dict)
    on_timeout: Callable[[TransportTimeoutError, RequestConfig | None], Any] | None = None


class SmartTimeoutPolicy(InterceptorPolicy):
    """Assigns per-endpoint timeouts to requests that carry none."""

    name = "smart_timeout"
    phases = (Phase.REQUEST, Phase.RESPONSE)
    options_type = SmartTimeoutOptions

    def __init__(self, context: Any, options: SmartTimeoutOptions | None = None) -> None:
        super().__init__(context, options)
        self.timeouts = 0

    def timeout_ms_for(self, config: RequestConfig) -> float:
        endpoints = self.options.endpoint_timeouts_ms
        qualified = f"{config.method} {config.url}"
        if qualified in endpoints:
            return float(endpoints[qualified])
        if config.url in endpoints:
            return float(endpoints[config.url])
        return float(self.options.default_timeout_ms)

    def on_request(self, config: RequestConfig) -> None:
        if config.timeout is None:
            config.timeout = self.timeout_ms_for(config) / 1000.0
        return None

    async def on_response_error(self, error: Exception) -> None:
        if not isinstance(error, TransportTimeoutError):
            return None
        self.timeouts += 1
        config = config_of(error)
        logger.warning("Request %s timed out", getattr(config, "url", None))
        if self.options.on_timeout is not None:
            try:
                await call_maybe_async(self.options.on_timeout, error, config)
            except Exception:
                logger.warning("on_timeout callback raised", exc_info=True)
        return None

    def stats(self) -> dict[str, Any]:
        return {"timeouts": self.timeouts}
