"""FIFO request queue with a concurrency bound.

Work is started strictly in submission order and at most ``max_concurrent``
thunks run at once. A finishing thunk immediately starts the next queued one.

Typical usage:
    queue = RequestQueue(QueueOptions(max_concurrent=2))
    futures = [queue.add(lambda u=u: client.get(u)) for u in urls]
    responses = await asyncio.gather(*futures)
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Iterable, Literal

from hc_httpx.exceptions import RequestCancelledError, ValidationError
from hc_httpx.utils.async_utils import call_maybe_async, settle

logger = logging.getLogger(__name__)

Thunk = Callable[[], Any | Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class QueueOptions:
    """Configuration for RequestQueue.

    Attributes:
        max_concurrent: Maximum number of thunks running at the same time.
    """

    max_concurrent: int = 5


def _validate_max_concurrent(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(
            message="max_concurrent must be a positive integer",
            data={"max_concurrent": value},
        )
    return value


class _QueueItem:
    __slots__ = ("thunk", "future")

    def __init__(self, thunk: Thunk, future: asyncio.Future[Any]):
        self.thunk = thunk
        self.future = future


class RequestQueue:
    """Concurrency-bounded FIFO executor.

    Raises:
        ValidationError: If ``max_concurrent`` is smaller than 1.
    """

    def __init__(self, options: QueueOptions | int | None = None) -> None:
        if isinstance(options, int) and not isinstance(options, bool):
            options = QueueOptions(max_concurrent=options)
        self.options = options or QueueOptions()
        self.max_concurrent = _validate_max_concurrent(self.options.max_concurrent)
        self.running = 0
        self.peak_running = 0
        self.completed = 0
        self.failed = 0
        self._queue: Deque[_QueueItem] = deque()
        self._tasks: set[asyncio.Task[None]] = set()

    def add(self, thunk: Thunk) -> asyncio.Future[Any]:
        """Enqueue ``thunk`` and return a future settled with its outcome."""
        if not callable(thunk):
            raise TypeError("thunk must be callable")
        future = asyncio.get_running_loop().create_future()
        self._queue.append(_QueueItem(thunk, future))
        self._drain()
        return future

    def _drain(self) -> None:
        while self.running < self.max_concurrent and self._queue:
            item = self._queue.popleft()
            if item.future.done():
                continue
            self.running += 1
            self.peak_running = max(self.peak_running, self.running)
            task = asyncio.ensure_future(self._run(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: _QueueItem) -> None:
        try:
            result = await call_maybe_async(item.thunk)
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except Exception as exc:
            self.failed += 1
            settle(item.future, error=exc)
        else:
            self.completed += 1
            settle(item.future, result=result)
        finally:
            self.running -= 1
            self._drain()

    def set_max_concurrent(self, value: int) -> None:
        self.max_concurrent = _validate_max_concurrent(value)
        self._drain()

    def clear(self, reason: str = "queue cleared") -> int:
        """Reject every queued (not yet running) item."""
        items = list(self._queue)
        self._queue.clear()
        for item in items:
            settle(item.future, error=RequestCancelledError(message=f"Request cancelled: {reason}"))
        if items:
            logger.info("Rejected %d queued requests: %s", len(items), reason)
        return len(items)

    async def aclose(self) -> None:
        """Reject queued items and cancel running ones."""
        self.clear("queue closed")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def queued(self) -> int:
        return len(self._queue)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "queued": len(self._queue),
            "max_concurrent": self.max_concurrent,
            "peak_running": self.peak_running,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass(frozen=True, slots=True)
class Settled:
    """Outcome of one thunk run by ``run_concurrent``."""

    index: int
    status: Literal["fulfilled", "rejected"]
    value: Any = None
    reason: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


async def run_concurrent(thunks: Iterable[Thunk], limit: int = 5) -> list[Settled]:
    """Run ``thunks`` at most ``limit`` at a time and collect every outcome.

    Failures do not stop the others; results are ordered by submission index.

    Raises:
        ValidationError: If ``limit`` is smaller than 1.
    """
    queue = RequestQueue(QueueOptions(max_concurrent=limit))
    futures = [queue.add(thunk) for thunk in thunks]
    try:
        outcomes = await asyncio.gather(*futures, return_exceptions=True)
    finally:
        if queue.running or queue.queued:
            await queue.aclose()
    return [
        Settled(index=index, status="rejected", reason=outcome)
        if isinstance(outcome, BaseException)
        else Settled(index=index, status="fulfilled", value=outcome)
        for index, outcome in enumerate(outcomes)
    ]
