"""Transports turn a RequestConfig into a Response.

``HttpxTransport`` is the default and sends through an ``httpx.AsyncClient``.
Tests and embedders may supply any ``Transport`` subclass instead.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx

from hc_httpx.exceptions import HTTPStatusError, TransportError, TransportTimeoutError
from hc_httpx.types import RequestConfig, Response

logger = logging.getLogger(__name__)

StatusValidator = Callable[[int], bool]


def default_validate_status(status: int) -> bool:
    return 200 <= status < 300


class Transport(ABC):
    """Abstract base class for request transports."""

    @abstractmethod
    async def send(self, config: RequestConfig) -> Response:
        """Sends a request and returns the response.

        Raises:
            TransportError: The request could not be completed.
            HTTPStatusError: The server answered with a rejected status.
        """

    async def aclose(self) -> None:
        return None


class HttpxTransport(Transport):
    """A transport backed by ``httpx.AsyncClient``."""

    def __init__(
        self,
        httpx_client: httpx.AsyncClient | None = None,
        *,
        validate_status: StatusValidator | None = None,
    ):
        self._owns_client = httpx_client is None
        self.httpx_client = httpx_client or httpx.AsyncClient()
        self.validate_status = validate_status or default_validate_status

    def _build_request(self, config: RequestConfig) -> httpx.Request:
        kwargs: dict[str, Any] = {}
        if config.params:
            kwargs["params"] = config.params
        if config.headers:
            kwargs["headers"] = config.headers
        if isinstance(config.data, (str, bytes)):
            kwargs["content"] = config.data
        elif config.data is not None:
            kwargs["json"] = config.data
        if config.timeout is not None:
            kwargs["timeout"] = config.timeout
        return self.httpx_client.build_request(config.method, config.full_url(), **kwargs)

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except json.JSONDecodeError:
                logger.debug("Response declared JSON but did not parse; returning text")
        return response.text

    async def send(self, config: RequestConfig) -> Response:
        request = self._build_request(config)
        try:
            raw = await self.httpx_client.send(request)
        except httpx.TimeoutException as e:
            raise TransportTimeoutError(message=f"Request timed out: {e}", config=config, cause=e) from e
        except httpx.RequestError as e:
            raise TransportError(message=f"Network communication error: {e}", config=config, cause=e) from e

        response = Response(
            status=raw.status_code,
            status_text=raw.reason_phrase,
            headers=dict(raw.headers),
            data=self._decode_body(raw),
            config=config,
        )
        if not self.validate_status(response.status):
            raise HTTPStatusError(
                message=f"Request failed with status code {response.status}",
                config=config,
                response=response,
            )
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self.httpx_client.aclose()
