from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingTransport
from hc_httpx.exceptions import RequestCancelledError, ValidationError
from hc_httpx.request_queue import QueueOptions, RequestQueue


def _job(log: list[str], label: str, delay: float = 0.01, fail: bool = False):
    async def run():
        log.append(f"start:{label}")
        await asyncio.sleep(delay)
        if fail:
            raise RuntimeError(label)
        log.append(f"end:{label}")
        return label

    return run


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_bound_and_order_is_fifo() -> None:
    queue = RequestQueue(QueueOptions(max_concurrent=2))
    log: list[str] = []

    futures = [queue.add(_job(log, label)) for label in "abcde"]
    results = await asyncio.gather(*futures)

    assert results == list("abcde")
    assert queue.peak_running == 2
    assert [entry for entry in log if entry.startswith("start")] == [f"start:{label}" for label in "abcde"]
    assert queue.stats()["completed"] == 5


@pytest.mark.asyncio
async def test_failed_thunk_rejects_its_future_and_frees_the_slot() -> None:
    queue = RequestQueue(1)
    log: list[str] = []

    failing = queue.add(_job(log, "a", fail=True))
    after = queue.add(_job(log, "b"))

    with pytest.raises(RuntimeError, match="a"):
        await failing
    assert await after == "b"
    assert queue.stats()["failed"] == 1
    assert queue.running == 0


@pytest.mark.asyncio
async def test_sync_thunks_are_supported() -> None:
    queue = RequestQueue(1)

    assert await queue.add(lambda: 42) == 42


@pytest.mark.parametrize("value", [0, -1, 1.5, True])
def test_invalid_max_concurrent_is_rejected(value) -> None:
    with pytest.raises(ValidationError):
        RequestQueue(QueueOptions(max_concurrent=value))


@pytest.mark.asyncio
async def test_set_max_concurrent_starts_waiting_work() -> None:
    queue = RequestQueue(1)
    log: list[str] = []

    futures = [queue.add(_job(log, label)) for label in "abc"]
    assert queue.running == 1
    queue.set_max_concurrent(3)
    assert queue.running == 3

    await asyncio.gather(*futures)
    with pytest.raises(ValidationError):
        queue.set_max_concurrent(0)


@pytest.mark.asyncio
async def test_clear_rejects_only_waiting_items() -> None:
    queue = RequestQueue(1)
    log: list[str] = []

    running = queue.add(_job(log, "a"))
    waiting = queue.add(_job(log, "b"))

    assert queue.clear() == 1
    with pytest.raises(RequestCancelledError):
        await waiting
    assert await running == "a"
    assert "start:b" not in log


@pytest.mark.asyncio
async def test_client_queue_bounds_transport_concurrency(make_client) -> None:
    transport = RecordingTransport(delay=0.01)
    client = make_client(transport).use_queue(1)

    await asyncio.gather(*(client.get(f"/item/{n}") for n in range(4)))

    assert transport.peak_in_flight == 1
    assert transport.urls == [f"/item/{n}" for n in range(4)]
    assert client.get_stats()["queue"]["peak_running"] == 1


def test_client_rejects_invalid_queue_size(make_client) -> None:
    with pytest.raises(ValidationError):
        make_client().use_queue(0)
