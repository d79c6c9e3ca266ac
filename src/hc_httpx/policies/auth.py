from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from hc_httpx.policies.base import InterceptorPolicy
from hc_httpx.types import Phase, RequestConfig
from hc_httpx.utils.async_utils import maybe_await

TokenGetter = Callable[[], str | None | Awaitable[str | None]]


@dataclass(frozen=True, slots=True)
class AuthOptions:
    """Configuration for bearer credential injection.

    Attributes:
        get_token: Accessor returning the current access token, sync or async.
        token: Static token used when no accessor is given.
        header_name: Header that carries the credential.
        scheme: Prefix placed before the token.
    """

    get_token: TokenGetter | None = None
    token: str | None = None
    header_name: str = "Authorization"
    scheme: str = "Bearer"


def format_credential(token: str, scheme: str) -> str:
    return f"{scheme} {token}" if scheme else token


class AuthPolicy(InterceptorPolicy):
    """Sets the credential header when a token is available."""

    name = "auth"
    phases = (Phase.REQUEST,)
    options_type = AuthOptions

    async def resolve_token(self) -> str | None:
        if self.options.get_token is not None:
            return await maybe_await(self.options.get_token())
        return self.options.token

    async def on_request(self, config: RequestConfig) -> Any:
        token = await self.resolve_token()
        if token:
            config.headers[self.options.header_name] = format_credential(token, self.options.scheme)
        return config
