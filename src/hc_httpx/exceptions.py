from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class HcHttpxError(Exception):
    """Base class for hc-httpx exceptions with a canonical error shape."""

    code: int
    message: str
    data: Any | None = None
    cause: Exception | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", (self.message,))
        if self.cause is not None:
            object.__setattr__(self, "__cause__", self.cause)
            object.__setattr__(self, "__suppress_context__", True)

    def to_error_dict(self) -> dict[str, Any]:
        """Return a plain dict describing the error."""
        return {"code": self.code, "message": self.message, "data": self.data}


@dataclass(frozen=True)
class ProtocolError(HcHttpxError):
    """Raised when a peer returns a payload that violates the expected shape."""

    code: int = 1000
    message: str = "Protocol error"


@dataclass(frozen=True)
class ValidationError(HcHttpxError):
    """Raised when interceptor setup or policy options are invalid."""

    code: int = 2001
    message: str = "Validation error"


@dataclass(frozen=True)
class BatchItemError(HcHttpxError):
    """Raised for a single failed entry of a multiplexed batch call."""

    code: int = 2010
    message: str = "Batch item failed"


@dataclass(frozen=True)
class NotFoundError(HcHttpxError):
    """Raised when operating on an unregistered group or interceptor."""

    code: int = 4000
    message: str = "Not found"


@dataclass(frozen=True)
class RequestCancelledError(HcHttpxError):
    """Raised when a request is cancelled before it settles."""

    code: int = 5004
    message: str = "Request cancelled"


@dataclass(frozen=True)
class CircuitBreakerOpenError(HcHttpxError):
    """Raised when a circuit breaker prevents the call."""

    code: int = 5010
    message: str = "Circuit breaker open"


@dataclass(frozen=True)
class RateLimitExceeded(HcHttpxError):
    """Raised when the sliding-window admission check denies a request."""

    code: int = 5020
    message: str = "Rate limit exceeded"


@dataclass(frozen=True)
class TransportError(HcHttpxError):
    """Raised when the transport fails to produce a usable response.

    ``config`` is the request that failed. ``response`` is present only when
    the server answered (see HTTPStatusError).
    """

    code: int = 6000
    message: str = "Transport error"
    config: Any | None = None
    response: Any | None = None


@dataclass(frozen=True)
class TransportTimeoutError(TransportError):
    """Raised when the transport times out."""

    code: int = 6001
    message: str = "Request timed out"


@dataclass(frozen=True)
class HTTPStatusError(TransportError):
    """Raised when the server answers with a status the validator rejects."""

    code: int = 6003
    message: str = "HTTP status error"

    @property
    def status(self) -> int | None:
        return getattr(self.response, "status", None)


def status_of(error: BaseException) -> int | None:
    """Return the HTTP status carried by an error, if any."""
    response = getattr(error, "response", None)
    if response is None:
        return None
    return getattr(response, "status", None)


def config_of(error: BaseException) -> Any | None:
    """Return the request config attached to an error, if any."""
    return getattr(error, "config", None)
