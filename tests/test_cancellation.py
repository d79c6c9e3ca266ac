from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingTransport
from hc_httpx.cancellation import CancellationRegistry, CancelToken
from hc_httpx.exceptions import RequestCancelledError
from hc_httpx.types import RequestConfig


def test_registry_supersedes_tokens_under_the_same_key() -> None:
    registry = CancellationRegistry()
    first = registry.create("search")
    second = registry.create("search")

    assert first.cancelled is True
    assert first.reason == "superseded"
    assert second.cancelled is False
    assert registry.get("search") is second


def test_registry_cancel_and_cancel_all() -> None:
    registry = CancellationRegistry()
    a = registry.create("a")
    b = registry.create("b")

    assert registry.cancel("a", "user left") is True
    assert registry.cancel("a") is False
    assert a.error().data == {"key": "a", "reason": "user left"}
    assert registry.cancel_all() == 1
    assert b.cancelled is True
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_pre_cancelled_token_never_reaches_transport(make_client) -> None:
    transport = RecordingTransport()
    client = make_client(transport)
    token = CancelToken("x")
    token.cancel("too late")

    with pytest.raises(RequestCancelledError):
        await client.get("/a", cancel_token=token)

    assert transport.calls == []


@pytest.mark.asyncio
async def test_cancel_aborts_in_flight_request(make_client) -> None:
    release = asyncio.Event()

    async def slow(config: RequestConfig):
        await release.wait()
        return {"status": 200}

    client = make_client(RecordingTransport(slow))

    pending = asyncio.ensure_future(client.cancellable("search", url="/search"))
    await asyncio.sleep(0.01)
    assert client.cancel("search", "user typed again") is True

    with pytest.raises(RequestCancelledError) as excinfo:
        await pending
    assert excinfo.value.data["reason"] == "user typed again"
    assert client.get_stats()["pending_cancellations"] == 0


@pytest.mark.asyncio
async def test_newer_cancellable_request_supersedes_older_one(make_client) -> None:
    release = asyncio.Event()

    async def slow(config: RequestConfig):
        await release.wait()
        return {"status": 200, "data": config.params}

    client = make_client(RecordingTransport(slow))

    older = asyncio.ensure_future(client.cancellable("search", url="/search", params={"q": "a"}))
    await asyncio.sleep(0.01)
    newer = asyncio.ensure_future(client.cancellable("search", url="/search", params={"q": "ab"}))
    await asyncio.sleep(0.01)
    release.set()

    with pytest.raises(RequestCancelledError):
        await older
    assert (await newer).data == {"q": "ab"}
    assert client.cancellation.keys() == []


@pytest.mark.asyncio
async def test_cancellation_is_not_retried(make_client) -> None:
    transport = RecordingTransport()
    client = make_client(transport).use_retry(retries=3, delay_ms=0)
    token = CancelToken()
    token.cancel()

    with pytest.raises(RequestCancelledError):
        await client.get("/a", cancel_token=token)

    assert transport.calls == []
