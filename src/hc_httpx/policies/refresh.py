"""Access-token refresh on authorization failures.

When a response fails with one of ``status_codes`` (401 by default) the
policy refreshes the access token once and replays the failed request with
the new credential. Concurrent failures share a single refresh call; each
request is replayed at most once, tracked by ``meta["auth_retried"]``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from hc_httpx.exceptions import ProtocolError, RequestCancelledError, config_of, status_of
from hc_httpx.policies.auth import format_credential
from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig, Response
from hc_httpx.utils.async_utils import call_maybe_async, maybe_await
from hc_httpx.utils.single_flight import SingleFlight

logger = logging.getLogger(__name__)

RETRIED_FLAG = "auth_retried"


@dataclass(frozen=True, slots=True)
class TokenPair:
    access_token: str
    refresh_token: str | None = None


RefreshRequestBuilder = Callable[[str], RequestConfig | Mapping[str, Any] | Awaitable[Any]]
RefreshResponseParser = Callable[[Response], TokenPair]


@dataclass(frozen=True, slots=True)
class RefreshOptions:
    """Configuration for the refresh coordinator.

    Attributes:
        get_refresh_token: Returns the stored refresh token, sync or async.
        set_access_token: Persists a new access token.
        set_refresh_token: Persists a rotated refresh token.
        on_refresh_fail: Called with the failure when a refresh cannot complete.
        refresh_url: Endpoint used by the default refresh request.
        build_request: Builds the refresh request from the refresh token.
        parse_response: Extracts a TokenPair from the refresh response.
        status_codes: Statuses that trigger a refresh.
    """

    get_refresh_token: Callable[[], Any] | None = None
    set_access_token: Callable[[str], Any] | None = None
    set_refresh_token: Callable[[str], Any] | None = None
    on_refresh_fail: Callable[[BaseException], Any] | None = None
    refresh_url: str = "/auth/refresh"
    build_request: RefreshRequestBuilder | None = None
    parse_response: RefreshResponseParser | None = None
    status_codes: frozenset[int] = frozenset({401})
    header_name: str = "Authorization"
    scheme: str = "Bearer"


def parse_token_response(response: Response) -> TokenPair:
    """Read ``token``/``access_token`` and ``refreshToken``/``refresh_token``."""
    data = response.data
    if not isinstance(data, Mapping):
        raise ProtocolError(message="Refresh response body is not an object", data={"status": response.status})
    access = data.get("token") or data.get("access_token")
    if not isinstance(access, str) or not access:
        raise ProtocolError(message="Refresh response is missing the access token", data={"keys": sorted(data)})
    refresh = data.get("refreshToken") or data.get("refresh_token")
    return TokenPair(access_token=access, refresh_token=refresh if isinstance(refresh, str) and refresh else None)


class RefreshTokenPolicy(InterceptorPolicy):
    name = "refresh_token"
    phases = (Phase.RESPONSE,)
    options_type = RefreshOptions

    def __init__(self, context: Any, options: RefreshOptions | None = None) -> None:
        super().__init__(context, options)
        self.flight: SingleFlight[str] = SingleFlight("token-refresh")

    async def on_response_error(self, error: Exception) -> Response | None:
        config = config_of(error)
        if not isinstance(config, RequestConfig) or status_of(error) not in self.options.status_codes:
            return None
        if config.meta.get(RETRIED_FLAG):
            logger.debug("Request %s %s already replayed after refresh", config.method, config.url)
            return None
        config.meta[RETRIED_FLAG] = True

        if self.flight.in_flight:
            access_token = await self.flight.join()
        else:
            refresh_token = await self._read_refresh_token()
            if not refresh_token:
                logger.warning("Authorization failed and no refresh token is available")
                await self._notify_failure(error)
                raise error
            access_token = await self.flight.run(lambda: self._refresh(refresh_token))

        config.headers[self.options.header_name] = format_credential(access_token, self.options.scheme)
        return await self.context.engine.request(config)

    async def _read_refresh_token(self) -> str | None:
        if self.options.get_refresh_token is None:
            return None
        return await maybe_await(self.options.get_refresh_token())

    def _build_request(self, refresh_token: str) -> Any:
        if self.options.build_request is not None:
            return self.options.build_request(refresh_token)
        return RequestConfig(method="POST", url=self.options.refresh_url, params={"refreshToken": refresh_token})

    async def _refresh(self, refresh_token: str) -> str:
        try:
            request = await maybe_await(self._build_request(refresh_token))
            response = await self.context.engine.send_raw(request)
            parser = self.options.parse_response or parse_token_response
            tokens = parser(response)
            if self.options.set_access_token is not None:
                await call_maybe_async(self.options.set_access_token, tokens.access_token)
            if tokens.refresh_token and self.options.set_refresh_token is not None:
                await call_maybe_async(self.options.set_refresh_token, tokens.refresh_token)
        except Exception as exc:
            logger.warning("Token refresh failed: %s", exc)
            await self._notify_failure(exc)
            raise
        logger.info("Access token refreshed")
        return tokens.access_token

    async def _notify_failure(self, error: BaseException) -> None:
        if self.options.on_refresh_fail is None:
            return
        try:
            await call_maybe_async(self.options.on_refresh_fail, error)
        except Exception:
            logger.warning("on_refresh_fail callback raised", exc_info=True)

    def reset(self) -> None:
        if self.flight.in_flight:
            logger.warning("Token refresh aborted while in flight")
        self.flight.cancel(RequestCancelledError(message="Token refresh aborted", data={"reason": "policy reset"}))

    def stats(self) -> dict[str, Any]:
        return {"refresh_calls": self.flight.started, "in_flight": self.flight.in_flight}
