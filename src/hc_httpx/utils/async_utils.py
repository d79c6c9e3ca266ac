from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")
CallableResult = Callable[..., T | Awaitable[T]]


async def maybe_await(value: T | Awaitable[T]) -> T:
    """Await ``value`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


async def call_maybe_async(func: CallableResult[T], *args: Any, **kwargs: Any) -> T:
    """Invoke a sync or async callable and return its result."""
    if not callable(func):
        raise TypeError("func must be callable")
    return await maybe_await(func(*args, **kwargs))


def settle(future: asyncio.Future[Any], *, result: Any = None, error: BaseException | None = None) -> None:
    """Resolve or reject a future unless it already settled (e.g. cancelled by the caller)."""
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)
