"""Per-client request mocking.

``MockingTransport`` wraps the client's real transport. A request matching a
registered ``MockRule`` is answered from the rule; anything else is passed to
the wrapped transport. Mocked requests still run through every interceptor.

URL matching:
    "*"              any URL
    "/users/*"       glob-style, ``*`` matches any run of characters
    "/users"         exact match
    re.Pattern       ``pattern.search(url)``
    callable         ``matcher(url, config)`` returning a bool
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Pattern

from hc_httpx.exceptions import HTTPStatusError
from hc_httpx.transport import StatusValidator, Transport, default_validate_status
from hc_httpx.types import RequestConfig, Response
from hc_httpx.utils.async_utils import maybe_await

logger = logging.getLogger(__name__)

UrlMatcher = str | Pattern[str] | Callable[[str, RequestConfig], bool]


@dataclass(frozen=True, slots=True)
class MockError:
    """Failure answered by a mock rule; raised as ``HTTPStatusError``."""

    status: int = 500
    message: str = "Mocked error"
    status_text: str = "Internal Server Error"
    data: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class MockRule:
    """A canned answer for matching requests.

    Attributes:
        url: URL matcher, see the module docstring.
        method: HTTP method, or ``"*"`` for any.
        response: Body to return, or a sync/async ``fn(config)`` producing it.
        status: Status of the mocked response.
        headers: Headers of the mocked response.
        delay_ms: Simulated latency before answering.
        error: Answer with a failure instead of a response.
    """

    url: UrlMatcher
    method: str = "GET"
    response: Any = None
    status: int = 200
    status_text: str = "OK"
    headers: Mapping[str, str] = field(default_factory=dict)
    delay_ms: float = 0
    error: MockError | None = None

    def matches(self, config: RequestConfig) -> bool:
        method = self.method.upper()
        if method != "*" and method != config.method.upper():
            return False
        url = self.url
        if isinstance(url, str):
            if url == "*":
                return True
            if "*" in url:
                pattern = ".*".join(re.escape(part) for part in url.split("*"))
                return re.fullmatch(pattern, config.url) is not None
            return url == config.url
        if isinstance(url, re.Pattern):
            return url.search(config.url) is not None
        if callable(url):
            return bool(url(config.url, config))
        return False

    def same_route(self, url: UrlMatcher, method: str) -> bool:
        return self.url == url and self.method.upper() == method.upper()


def _as_rule(value: MockRule | Mapping[str, Any]) -> MockRule:
    if isinstance(value, MockRule):
        return value
    payload = dict(value)
    error = payload.get("error")
    if isinstance(error, Mapping):
        payload["error"] = MockError(**error)
    return MockRule(**payload)


class MockingTransport(Transport):
    """Answers matching requests from rules and forwards the rest."""

    def __init__(
        self,
        inner: Transport,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        validate_status: StatusValidator | None = None,
    ) -> None:
        self.inner = inner
        self.sleep = sleep
        self.validate_status = validate_status or default_validate_status
        self.rules: list[MockRule] = []
        self.served = 0

    def add(self, rules: MockRule | Mapping[str, Any] | list[MockRule | Mapping[str, Any]]) -> list[MockRule]:
        items = rules if isinstance(rules, list) else [rules]
        added = [_as_rule(item) for item in items]
        self.rules.extend(added)
        return added

    def remove(self, url: UrlMatcher, method: str = "GET") -> int:
        before = len(self.rules)
        self.rules = [rule for rule in self.rules if not rule.same_route(url, method)]
        return before - len(self.rules)

    def find(self, config: RequestConfig) -> MockRule | None:
        for rule in self.rules:
            if rule.matches(config):
                return rule
        return None

    async def send(self, config: RequestConfig) -> Response:
        rule = self.find(config)
        if rule is None:
            return await self.inner.send(config)
        self.served += 1
        logger.debug("Mocked %s %s", config.method, config.url)
        if rule.delay_ms > 0:
            await self.sleep(rule.delay_ms / 1000.0)
        if rule.error is not None:
            error = rule.error
            response = Response(
                status=error.status,
                status_text=error.status_text,
                headers=dict(error.headers),
                data=error.data if error.data is not None else {},
                config=config,
            )
            raise HTTPStatusError(message=error.message, config=config, response=response)

        body = rule.response
        if callable(body):
            body = await maybe_await(body(config))
        response = Response(
            status=rule.status,
            status_text=rule.status_text,
            headers=dict(rule.headers),
            data=body,
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
        await self.inner.aclose()
