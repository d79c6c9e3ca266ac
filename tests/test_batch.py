from __future__ import annotations

import asyncio
from typing import Any

import pytest

from conftest import RecordingTransport
from hc_httpx.batch import BatchCoalescer, BatchOptions
from hc_httpx.exceptions import BatchItemError, ProtocolError, RequestCancelledError, TransportError, ValidationError
from hc_httpx.types import RequestConfig, Response


class BatchServer:
    """Answers multiplexed calls with one result per request."""

    def __init__(self, results: Any = None, error: Exception | None = None) -> None:
        self.results = results
        self.error = error
        self.calls: list[RequestConfig] = []

    async def __call__(self, config: RequestConfig) -> Response:
        self.calls.append(config)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.results is not None:
            return Response(status=200, data=self.results, config=config)
        requests = config.data["requests"]
        return Response(
            status=200,
            data=[{"success": True, "data": request["url"]} for request in requests],
            config=config,
        )


@pytest.mark.asyncio
async def test_flushes_when_batch_size_is_reached() -> None:
    server = BatchServer()
    batcher = BatchCoalescer(server, BatchOptions(batch_size=2, delay_ms=10_000))

    first = batcher.add({"url": "/a"})
    second = batcher.add({"url": "/b", "params": {"x": 1}})

    assert await first == {"success": True, "data": "/a"}
    assert await second == {"success": True, "data": "/b"}
    assert len(server.calls) == 1
    call = server.calls[0]
    assert call.method == "POST"
    assert call.url == "/batch"
    assert call.data["requests"][1] == {"method": "GET", "url": "/b", "params": {"x": 1}, "data": None, "headers": {}}


@pytest.mark.asyncio
async def test_flushes_after_delay_when_batch_is_not_full() -> None:
    server = BatchServer()
    batcher = BatchCoalescer(server, BatchOptions(batch_size=10, delay_ms=5))

    future = batcher.add({"url": "/a"})
    assert server.calls == []

    assert await asyncio.wait_for(future, timeout=1) == {"success": True, "data": "/a"}
    assert batcher.stats()["batches_sent"] == 1


@pytest.mark.asyncio
async def test_oversized_buffer_is_split_across_calls() -> None:
    server = BatchServer()
    batcher = BatchCoalescer(server, BatchOptions(batch_size=2, delay_ms=10_000))

    futures = [batcher.add({"url": f"/{n}"}) for n in range(5)]
    await batcher.flush()

    assert [len(call.data["requests"]) for call in server.calls] == [2, 2, 1]
    assert [(await future)["data"] for future in futures] == [f"/{n}" for n in range(5)]


@pytest.mark.asyncio
async def test_failed_items_reject_only_their_callers() -> None:
    server = BatchServer(results=[{"success": True, "data": 1}, {"success": False, "error": "boom"}])
    batcher = BatchCoalescer(server, BatchOptions(batch_size=2))

    ok = batcher.add({"url": "/a"})
    failed = batcher.add({"url": "/b"})

    assert (await ok)["data"] == 1
    with pytest.raises(BatchItemError) as excinfo:
        await failed
    assert excinfo.value.message == "boom"
    assert excinfo.value.data["index"] == 1


@pytest.mark.asyncio
async def test_wrapped_responses_shape_is_accepted() -> None:
    server = BatchServer(results={"responses": [{"success": True, "data": "x"}]})
    batcher = BatchCoalescer(server, BatchOptions(batch_size=1))

    assert (await batcher.add({"url": "/a"}))["data"] == "x"


@pytest.mark.asyncio
async def test_call_failure_rejects_every_item_of_the_flush() -> None:
    error = TransportError(message="down")
    batcher = BatchCoalescer(BatchServer(error=error), BatchOptions(batch_size=2))

    futures = [batcher.add({"url": "/a"}), batcher.add({"url": "/b"})]
    results = await asyncio.gather(*futures, return_exceptions=True)

    assert results == [error, error]


@pytest.mark.asyncio
async def test_result_count_mismatch_is_a_protocol_error() -> None:
    batcher = BatchCoalescer(BatchServer(results=[{"success": True}]), BatchOptions(batch_size=2))

    futures = [batcher.add({"url": "/a"}), batcher.add({"url": "/b"})]
    results = await asyncio.gather(*futures, return_exceptions=True)

    assert all(isinstance(result, ProtocolError) for result in results)
    assert results[0].data == {"expected": 2, "received": 1}


@pytest.mark.asyncio
async def test_close_rejects_buffered_items_and_refuses_new_ones() -> None:
    batcher = BatchCoalescer(BatchServer(), BatchOptions(batch_size=10, delay_ms=10_000))

    pending = batcher.add({"url": "/a"})
    await batcher.aclose()

    with pytest.raises(RequestCancelledError):
        await pending
    with pytest.raises(RequestCancelledError):
        batcher.add({"url": "/b"})
    assert batcher.processing is False


@pytest.mark.parametrize("options", [BatchOptions(batch_size=0), BatchOptions(delay_ms=-1)])
def test_invalid_options_are_rejected(options: BatchOptions) -> None:
    with pytest.raises(ValidationError):
        BatchCoalescer(BatchServer(), options)


@pytest.mark.asyncio
async def test_client_batcher_sends_through_interceptors(make_client) -> None:
    def handler(config: RequestConfig):
        assert config.headers["Authorization"] == "Bearer t"
        return {"status": 200, "data": [{"success": True, "id": n} for n in range(len(config.data["requests"]))]}

    transport = RecordingTransport(handler)
    client = make_client(transport).use_auth(get_token=lambda: "t")
    batcher = client.create_batcher(batch_size=2, endpoint="/rpc/batch")

    results = await asyncio.gather(batcher.add({"url": "/a"}), batcher.add({"url": "/b"}))

    assert [result["id"] for result in results] == [0, 1]
    assert transport.urls == ["/rpc/batch"]
    assert client.get_stats()["batchers"][0]["batches_sent"] == 1
    await client.aclose()
