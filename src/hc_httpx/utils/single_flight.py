"""Single-flight execution: concurrent callers share one underlying call.

The shared call runs in its own task, so a waiter that is cancelled does not
cancel the call for everyone else. The slot is cleared before the shared
future settles, which means any caller that observes the result can start a
fresh flight immediately afterwards.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Generic, TypeVar

from hc_httpx.exceptions import RequestCancelledError
from hc_httpx.utils.async_utils import settle

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FlightState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class SingleFlight(Generic[T]):
    """At most one pending call at a time; late callers join it."""

    def __init__(self, name: str = "single-flight") -> None:
        self.name = name
        self.started = 0
        self._future: asyncio.Future[T] | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> FlightState:
        return FlightState.PENDING if self._future is not None else FlightState.IDLE

    @property
    def in_flight(self) -> bool:
        return self._future is not None

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Join the pending call, or start one with ``factory``."""
        future = self._future
        if future is None:
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            self._future = future
            self.started += 1
            self._task = asyncio.ensure_future(self._execute(factory, future))
            logger.debug("%s: started call #%d", self.name, self.started)
        return await asyncio.shield(future)

    async def join(self) -> T:
        """Wait for the pending call.

        Raises:
            RuntimeError: If nothing is in flight.
        """
        if self._future is None:
            raise RuntimeError(f"{self.name}: nothing in flight")
        return await asyncio.shield(self._future)

    async def _execute(self, factory: Callable[[], Awaitable[T]], future: asyncio.Future[T]) -> None:
        try:
            result = await factory()
        except asyncio.CancelledError:
            self._clear(future)
            future.cancel()
            raise
        except Exception as exc:
            self._clear(future)
            settle(future, error=exc)
        else:
            self._clear(future)
            settle(future, result=result)

    def _clear(self, future: asyncio.Future[T]) -> None:
        if self._future is future:
            self._future = None
            self._task = None

    def cancel(self, error: BaseException | None = None) -> None:
        """Abort the pending call; joined callers are rejected with ``error``.

        Defaults to ``RequestCancelledError``.
        """
        task, future = self._task, self._future
        self._task = None
        self._future = None
        if future is not None:
            settle(future, error=error if error is not None else RequestCancelledError(message=f"{self.name} aborted"))
        if task is not None:
            task.cancel()
