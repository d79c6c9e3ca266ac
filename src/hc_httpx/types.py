"""hc-httpx request/response types.

Primary types:
    RequestConfig - mutable request description flowing through the chains
    Response - normalized transport response
    Phase - interceptor chain identifier
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = ["Phase", "RequestConfig", "Response"]


class Phase(str, enum.Enum):
    """Interceptor chain phases."""

    REQUEST = "request"
    RESPONSE = "response"


class RequestConfig(BaseModel):
    """A single outgoing request.

    Interceptors mutate instances in place. Per-request policy bookkeeping
    (retry counters, the auth replay flag, the request id) is stored in
    ``meta`` so replays of the same config keep their state.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    method: str = "GET"
    url: str = ""
    base_url: str | None = None
    params: dict[str, Any] = Field(default_factory=dict)
    data: Any | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = None
    """Timeout in seconds; ``None`` defers to the engine default."""
    cancel_token: Any | None = None
    meta: dict[str, Any] = Field(default_factory=dict)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    def full_url(self) -> str:
        if not self.base_url or "://" in self.url:
            return self.url
        return f"{self.base_url.rstrip('/')}/{self.url.lstrip('/')}"


class Response(BaseModel):
    """A transport response bound to the config that produced it."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: int
    status_text: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any | None = None
    config: RequestConfig | None = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
