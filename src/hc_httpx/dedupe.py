"""Collapsing of concurrent identical requests.

Requests whose dedupe key matches a pending request started less than
``ttl_ms`` ago share that request's task instead of hitting the transport.
The pending entry is removed when the shared task settles, before any caller
observes the outcome.

Typical usage:
    deduplicator = RequestDeduplicator(DedupeOptions(ttl_ms=500))
    task = deduplicator.submit(config, engine.request)
    response = await asyncio.shield(task)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from hc_httpx.types import RequestConfig, Response

logger = logging.getLogger(__name__)

Sender = Callable[[RequestConfig], Awaitable[Response]]


def default_dedupe_key(config: RequestConfig) -> str:
    return "::".join(
        (
            config.method,
            config.url,
            json.dumps(config.params or {}, sort_keys=True, default=str),
            json.dumps(config.data if config.data is not None else {}, sort_keys=True, default=str),
        )
    )


@dataclass(frozen=True, slots=True)
class DedupeOptions:
    """Configuration for RequestDeduplicator.

    Attributes:
        ttl_ms: How long a pending request may be joined after it started.
        key_generator: Derives the dedupe key from a request.
    """

    ttl_ms: float = 1000
    key_generator: Callable[[RequestConfig], str] | None = None


class _Pending:
    __slots__ = ("task", "started_ms")

    def __init__(self, task: asyncio.Task[Response], started_ms: float):
        self.task = task
        self.started_ms = started_ms


class RequestDeduplicator:
    def __init__(self, options: DedupeOptions | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.options = options or DedupeOptions()
        self._clock = clock
        self._pending: dict[str, _Pending] = {}
        self.collapsed = 0

    def key_for(self, config: RequestConfig) -> str | None:
        generate = self.options.key_generator or default_dedupe_key
        try:
            return generate(config)
        except Exception:
            logger.debug("Dedupe key generation failed for %s", config.url, exc_info=True)
            return None

    def submit(self, config: RequestConfig, send: Sender) -> asyncio.Task[Response]:
        """Return the shared task for ``config``, starting one if needed."""
        key = self.key_for(config)
        if key is None:
            return asyncio.ensure_future(send(config))

        now_ms = self._clock() * 1000.0
        pending = self._pending.get(key)
        if pending is not None:
            if now_ms - pending.started_ms < self.options.ttl_ms:
                self.collapsed += 1
                logger.debug("Joined pending request %s", key)
                return pending.task
            del self._pending[key]

        task = asyncio.ensure_future(self._run(key, config, send))
        self._pending[key] = _Pending(task, now_ms)
        return task

    async def _run(self, key: str, config: RequestConfig, send: Sender) -> Response:
        try:
            return await send(config)
        finally:
            pending = self._pending.get(key)
            if pending is not None and pending.task is asyncio.current_task():
                del self._pending[key]

    def clear(self) -> int:
        """Forget every pending entry. Running requests are not cancelled."""
        count = len(self._pending)
        self._pending.clear()
        return count

    def stats(self) -> dict[str, Any]:
        return {
            "pending_requests": len(self._pending),
            "keys": list(self._pending),
            "collapsed": self.collapsed,
            "ttl_ms": self.options.ttl_ms,
        }

    def __len__(self) -> int:
        return len(self._pending)
