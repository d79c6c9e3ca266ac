from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

import pytest

from hc_httpx.client import HttpClient
from hc_httpx.exceptions import HTTPStatusError
from hc_httpx.transport import Transport
from hc_httpx.types import RequestConfig, Response


class FakeClock:
    """Controllable clock for deterministic time-based tests."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)


class FakeSleep:
    """Records requested delays and yields to the loop instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


Handler = Callable[[RequestConfig], Any]


class RecordingTransport(Transport):
    """Scriptable in-memory transport.

    ``handler`` receives each config and returns a ``Response``, a mapping of
    ``Response`` fields, or an exception instance to raise. It may be async.
    Non-2xx responses are raised as ``HTTPStatusError`` like the httpx
    transport does.
    """

    def __init__(self, handler: Handler | None = None, *, delay: float = 0.0) -> None:
        self.handler = handler or (lambda config: {"status": 200, "data": {"ok": True}})
        self.delay = delay
        self.calls: list[RequestConfig] = []
        self.sent_headers: list[dict[str, str]] = []
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False

    @property
    def urls(self) -> list[str]:
        return [config.url for config in self.calls]

    async def send(self, config: RequestConfig) -> Response:
        self.calls.append(config)
        self.sent_headers.append(dict(config.headers))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            result = self.handler(config)
            if inspect.isawaitable(result):
                result = await result
        finally:
            self.in_flight -= 1
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, Response):
            response = result.model_copy(update={"config": config})
        else:
            response = Response(config=config, **result)
        if not response.ok:
            raise HTTPStatusError(
                message=f"Request failed with status code {response.status}",
                config=config,
                response=response,
            )
        return response

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1000.0)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def make_client(clock: FakeClock, fake_sleep: FakeSleep) -> Callable[..., HttpClient]:
    def factory(transport: Transport | None = None, **kwargs: Any) -> HttpClient:
        kwargs.setdefault("clock", clock.now)
        kwargs.setdefault("sleep", fake_sleep)
        return HttpClient(transport or RecordingTransport(), **kwargs)

    return factory
