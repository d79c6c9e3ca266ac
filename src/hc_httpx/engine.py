"""Request engine: interceptor chains wrapped around a transport.

Flow of ``HttpEngine.request``:
  1. merge engine defaults into the config;
  2. run request handlers in registration order. A handler may return a new
     config, return a ``Response`` to short-circuit the transport, or raise;
  3. send through the transport unless short-circuited or failed;
  4. run response handlers in reverse registration order. ``on_rejected``
     handlers that return a value recover the call; ones that raise replace
     the error.

Handlers may be plain functions or coroutines. Returning ``None`` keeps the
current value (or the current error, for ``on_rejected``).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Mapping

from hc_httpx.chain import InterceptorChain, Interceptors
from hc_httpx.observability.logging import LogContext
from hc_httpx.transport import HttpxTransport, Transport
from hc_httpx.types import Phase, RequestConfig, Response
from hc_httpx.utils.async_utils import maybe_await

logger = logging.getLogger(__name__)

ConfigLike = RequestConfig | Mapping[str, Any] | None


class HttpEngine:
    """Owns the transport and the two interceptor chains of one client."""

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        client_id: str | None = None,
    ):
        self.transport = transport or HttpxTransport()
        self.base_url = base_url
        self.headers: dict[str, str] = dict(headers or {})
        self.timeout = timeout
        self.client_id = client_id
        self.interceptors = Interceptors()

    def merge_config(self, config: ConfigLike = None, **overrides: Any) -> RequestConfig:
        """Return a RequestConfig with engine defaults applied.

        An existing RequestConfig is updated in place so replays keep their
        ``meta`` bookkeeping.
        """
        if isinstance(config, RequestConfig):
            merged = config
            for key, value in overrides.items():
                setattr(merged, key, value)
        else:
            merged = RequestConfig.model_validate({**dict(config or {}), **overrides})
        if merged.base_url is None:
            merged.base_url = self.base_url
        present = {name.lower() for name in merged.headers}
        for name, value in self.headers.items():
            if name.lower() not in present:
                merged.headers[name] = value
        return merged

    async def request(self, config: ConfigLike = None, **overrides: Any) -> Response:
        merged = self.merge_config(config, **overrides)
        request_id = merged.meta.setdefault("request_id", uuid.uuid4().hex[:16])
        with LogContext(client_id=self.client_id, request_id=request_id):
            return await self._run(merged)

    async def send_raw(self, config: ConfigLike = None, **overrides: Any) -> Response:
        """Send through the transport without running any interceptor."""
        return await self._dispatch(self.merge_config(config, **overrides))

    async def _run(self, config: RequestConfig) -> Response:
        value, error = await self._run_chain(self.interceptors.request, config, None)
        if error is None and not isinstance(value, Response):
            try:
                value = await self._dispatch(value)
            except Exception as exc:
                error = exc
        value, error = await self._run_chain(self.interceptors.response, value, error)
        if error is not None:
            raise error
        return value

    async def _run_chain(
        self,
        chain: InterceptorChain,
        value: Any,
        error: BaseException | None,
    ) -> tuple[Any, BaseException | None]:
        for entry in chain.dispatch_order():
            if chain.phase == Phase.REQUEST and isinstance(value, Response):
                break
            handler = entry.on_fulfilled if error is None else entry.on_rejected
            if handler is None:
                continue
            try:
                result = await maybe_await(handler(value if error is None else error))
            except Exception as exc:
                error = exc
                continue
            if result is None:
                continue
            if error is None:
                value = self._check_result(chain, result)
            else:
                value, error = self._check_result(chain, result), None
        return value, error

    @staticmethod
    def _check_result(chain: InterceptorChain, result: Any) -> Any:
        if isinstance(result, Response):
            return result
        if isinstance(result, RequestConfig) and chain.phase == Phase.REQUEST:
            return result
        raise TypeError(
            f"{chain.phase.value} interceptor returned {type(result).__name__}; "
            "expected RequestConfig, Response or None"
        )

    async def _dispatch(self, config: RequestConfig) -> Response:
        if config.timeout is None:
            config.timeout = self.timeout
        token = config.cancel_token
        if token is None:
            return await self.transport.send(config)
        token.raise_if_cancelled()
        send = asyncio.ensure_future(self.transport.send(config))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({send, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not send.done():
                send.cancel()
        if send.done() and not send.cancelled():
            return send.result()
        logger.info("Request %s %s cancelled in flight", config.method, config.url)
        raise token.error()

    async def get(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="GET", url=url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="DELETE", url=url, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="HEAD", url=url, **kwargs)

    async def options(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="OPTIONS", url=url, **kwargs)

    async def post(self, url: str, data: Any = None, **kwargs: Any) -> Response:
        return await self.request(method="POST", url=url, data=data, **kwargs)

    async def put(self, url: str, data: Any = None, **kwargs: Any) -> Response:
        return await self.request(method="PUT", url=url, data=data, **kwargs)

    async def patch(self, url: str, data: Any = None, **kwargs: Any) -> Response:
        return await self.request(method="PATCH", url=url, data=data, **kwargs)

    async def aclose(self) -> None:
        await self.transport.aclose()
