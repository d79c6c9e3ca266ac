from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from hc_httpx.exceptions import HcHttpxError, config_of
from hc_httpx.observability.logging import get_logger
from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig, Response

Formatter = Callable[[Any], dict[str, Any]]


def format_request(config: RequestConfig) -> dict[str, Any]:
    return {
        "method": config.method,
        "url": config.url,
        "base_url": config.base_url,
        "params": config.params,
    }


def format_response(response: Response) -> dict[str, Any]:
    config = response.config
    return {
        "status": response.status,
        "status_text": response.status_text,
        "method": config.method if config else None,
        "url": config.url if config else None,
        "from_cache": response.from_cache,
    }


def format_error(error: BaseException) -> dict[str, Any]:
    config = config_of(error)
    response = getattr(error, "response", None)
    return {
        "error": type(error).__name__,
        "message": str(error),
        "code": error.code if isinstance(error, HcHttpxError) else None,
        "status": getattr(response, "status", None),
        "method": getattr(config, "method", None),
        "url": getattr(config, "url", None),
    }


@dataclass(frozen=True, slots=True)
class LoggingOptions:
    """Configuration for LoggingPolicy.

    ``logger`` defaults to the structured ``hc_httpx.http`` logger.
    """

    log_requests: bool = True
    log_responses: bool = True
    log_errors: bool = True
    logger: logging.Logger | None = None
    level: int = logging.INFO
    request_formatter: Formatter | None = None
    response_formatter: Formatter | None = None
    error_formatter: Formatter | None = None


class LoggingPolicy(InterceptorPolicy):
    """Logs requests, responses and errors with structured ``extra`` fields."""

    name = "logging"
    phases = (Phase.REQUEST, Phase.RESPONSE)
    options_type = LoggingOptions

    def __init__(self, context: Any, options: LoggingOptions | None = None) -> None:
        super().__init__(context, options)
        self.logger = self.options.logger or get_logger("hc_httpx.http")

    def on_request(self, config: RequestConfig) -> None:
        if self.options.log_requests:
            fields = (self.options.request_formatter or format_request)(config)
            self.logger.log(self.options.level, "Request %s %s", config.method, config.url, extra={"http": fields})
        return None

    def on_request_error(self, error: Exception) -> None:
        self._log_error("Request error", error)
        return None

    def on_response(self, response: Response) -> None:
        if self.options.log_responses:
            fields = (self.options.response_formatter or format_response)(response)
            self.logger.log(self.options.level, "Response %s", response.status, extra={"http": fields})
        return None

    def on_response_error(self, error: Exception) -> None:
        self._log_error("Response error", error)
        return None

    def _log_error(self, label: str, error: BaseException) -> None:
        if not self.options.log_errors:
            return
        fields = (self.options.error_formatter or format_error)(error)
        self.logger.error("%s: %s", label, error, extra={"http": fields})
