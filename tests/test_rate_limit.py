from __future__ import annotations

import pytest

from conftest import RecordingTransport
from hc_httpx.exceptions import RateLimitExceeded
from hc_httpx.policies import RateLimitOptions, SlidingWindow


@pytest.mark.asyncio
async def test_requests_beyond_window_capacity_are_rejected(make_client, clock) -> None:
    transport = RecordingTransport()
    client = make_client(transport).use_rate_limit(RateLimitOptions(max_requests=2, window_ms=1000))

    await client.get("/a")
    clock.advance(0.125)
    await client.get("/b")

    with pytest.raises(RateLimitExceeded) as excinfo:
        await client.get("/c")

    assert transport.urls == ["/a", "/b"]
    assert excinfo.value.data["retry_after_ms"] == pytest.approx(875)
    assert excinfo.value.data["max_requests"] == 2


@pytest.mark.asyncio
async def test_window_slides_at_exact_boundary(make_client, clock) -> None:
    transport = RecordingTransport()
    client = make_client(transport).use_rate_limit(max_requests=2, window_ms=1000)

    await client.get("/a")
    await client.get("/b")
    clock.advance(0.5)
    with pytest.raises(RateLimitExceeded):
        await client.get("/c")

    clock.advance(0.5)
    await client.get("/d")

    assert transport.urls == ["/a", "/b", "/d"]


@pytest.mark.asyncio
async def test_rejected_requests_do_not_consume_capacity(make_client, clock) -> None:
    transport = RecordingTransport()
    client = make_client(transport).use_rate_limit(max_requests=1, window_ms=1000)

    await client.get("/a")
    for _ in range(3):
        clock.advance(0.25)
        with pytest.raises(RateLimitExceeded):
            await client.get("/rejected")

    clock.advance(0.25)
    await client.get("/b")

    assert client.policy("rate_limit").stats() == {"in_window": 1, "rejected": 3}


@pytest.mark.asyncio
async def test_on_limit_callback_receives_error_and_config(make_client) -> None:
    seen = []
    client = make_client().use_rate_limit(
        max_requests=0,
        on_limit=lambda error, config: seen.append((error.code, config.url)),
    )

    with pytest.raises(RateLimitExceeded):
        await client.get("/a")

    assert seen == [(5020, "/a")]


@pytest.mark.asyncio
async def test_failing_on_limit_callback_still_rejects(make_client) -> None:
    def explode(error, config):
        raise RuntimeError("callback broke")

    client = make_client().use_rate_limit(max_requests=0, on_limit=explode)

    with pytest.raises(RateLimitExceeded):
        await client.get("/a")


def test_sliding_window_retry_after() -> None:
    window = SlidingWindow(max_requests=1, window_ms=200)

    assert window.try_admit(0) is True
    assert window.try_admit(50) is False
    assert window.retry_after_ms(50) == 150
    assert window.try_admit(200) is True
