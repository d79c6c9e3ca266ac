"""Coalescing of independent requests into one multiplexed call.

Descriptors handed to ``BatchCoalescer.add`` are buffered and sent together
as ``POST {endpoint}`` with body ``{"requests": [...]}``. A flush happens when
``batch_size`` descriptors are buffered or ``delay_ms`` after the first one
arrived, whichever comes first.

The server answers with a list (or ``{"responses": [...]}``) holding one
result per request in order. A result with a truthy ``success`` resolves its
caller's future with that result; any other result rejects it with
``BatchItemError``. If the multiplexed call itself fails, every request in
that flush is rejected with the same error.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Mapping

from hc_httpx.exceptions import BatchItemError, ProtocolError, RequestCancelledError, ValidationError
from hc_httpx.types import RequestConfig, Response
from hc_httpx.utils.async_utils import settle

logger = logging.getLogger(__name__)

Sender = Callable[[RequestConfig], Awaitable[Response]]


@dataclass(frozen=True, slots=True)
class BatchOptions:
    """Configuration for BatchCoalescer.

    Attributes:
        batch_size: Maximum descriptors per multiplexed call.
        delay_ms: Time to wait for more descriptors before flushing.
        endpoint: Target of the multiplexed call.
    """

    batch_size: int = 10
    delay_ms: float = 100
    endpoint: str = "/batch"


class _BatchItem:
    __slots__ = ("config", "future")

    def __init__(self, config: RequestConfig, future: asyncio.Future[Any]):
        self.config = config
        self.future = future


def describe(config: RequestConfig) -> dict[str, Any]:
    return {
        "method": config.method,
        "url": config.url,
        "params": config.params,
        "data": config.data,
        "headers": config.headers,
    }


def _result_list(response: Response, expected: int) -> list[Any]:
    data = response.data
    if isinstance(data, Mapping) and "responses" in data:
        data = data["responses"]
    if not isinstance(data, list):
        raise ProtocolError(message="Batch response is not a list", data={"status": response.status})
    if len(data) != expected:
        raise ProtocolError(
            message="Batch response length does not match the request count",
            data={"expected": expected, "received": len(data)},
        )
    return data


class BatchCoalescer:
    """Buffers request descriptors and multiplexes them through ``send``.

    Raises:
        ValidationError: If ``batch_size`` < 1 or ``delay_ms`` < 0.
    """

    def __init__(self, send: Sender, options: BatchOptions | None = None) -> None:
        self.options = options or BatchOptions()
        if self.options.batch_size < 1:
            raise ValidationError(message="batch_size must be at least 1", data={"batch_size": self.options.batch_size})
        if self.options.delay_ms < 0:
            raise ValidationError(message="delay_ms must not be negative", data={"delay_ms": self.options.delay_ms})
        self._send = send
        self._items: Deque[_BatchItem] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._flushes: set[asyncio.Task[None]] = set()
        self.closed = False
        self.batches_sent = 0

    @property
    def processing(self) -> bool:
        return bool(self._flushes) or self._timer is not None

    def add(self, config: RequestConfig | Mapping[str, Any]) -> asyncio.Future[Any]:
        """Buffer a descriptor and return a future for its result.

        Raises:
            RequestCancelledError: If the coalescer was closed.
        """
        if self.closed:
            raise RequestCancelledError(message="Batch coalescer is closed")
        if not isinstance(config, RequestConfig):
            config = RequestConfig.model_validate(config)
        future = asyncio.get_running_loop().create_future()
        self._items.append(_BatchItem(config, future))
        if len(self._items) >= self.options.batch_size:
            self._cancel_timer()
            self._start_flush()
        self._schedule()
        return future

    def _schedule(self) -> None:
        if self._items and self._timer is None and not self.closed:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.options.delay_ms / 1000.0, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._start_flush()

    def _take(self) -> list[_BatchItem]:
        batch: list[_BatchItem] = []
        while self._items and len(batch) < self.options.batch_size:
            item = self._items.popleft()
            if not item.future.done():
                batch.append(item)
        return batch

    def _start_flush(self) -> asyncio.Task[None] | None:
        batch = self._take()
        if not batch:
            return None
        task = asyncio.ensure_future(self._flush(batch))
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)
        return task

    async def _flush(self, batch: list[_BatchItem]) -> None:
        request = RequestConfig(
            method="POST",
            url=self.options.endpoint,
            data={"requests": [describe(item.config) for item in batch]},
        )
        try:
            response = await self._send(request)
            results = _result_list(response, len(batch))
        except asyncio.CancelledError:
            for item in batch:
                settle(item.future, error=RequestCancelledError(message="Batch flush cancelled"))
            raise
        except Exception as exc:
            logger.warning("Batch call with %d requests failed: %s", len(batch), exc)
            for item in batch:
                settle(item.future, error=exc)
        else:
            for index, (item, result) in enumerate(zip(batch, results)):
                if isinstance(result, Mapping) and result.get("success"):
                    settle(item.future, result=result)
                else:
                    reason = result.get("error") if isinstance(result, Mapping) else None
                    settle(
                        item.future,
                        error=BatchItemError(message=str(reason or "Batch item failed"), data={"index": index, "result": result}),
                    )
        finally:
            self.batches_sent += 1
            self._schedule()

    async def flush(self) -> None:
        """Send everything buffered now and wait for those calls to finish."""
        self._cancel_timer()
        tasks = []
        while self._items:
            task = self._start_flush()
            if task is not None:
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose(self) -> None:
        """Reject buffered descriptors and cancel in-flight flushes."""
        self.closed = True
        self._cancel_timer()
        while self._items:
            item = self._items.popleft()
            settle(item.future, error=RequestCancelledError(message="Batch coalescer closed"))
        tasks = list(self._flushes)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        return {
            "queued": len(self._items),
            "in_flight": len(self._flushes),
            "batches_sent": self.batches_sent,
            "processing": self.processing,
        }
