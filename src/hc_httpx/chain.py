"""Ordered interceptor chains.

Each client engine owns one chain per Phase. Handlers are registered with
``use(on_fulfilled, on_rejected)`` and receive an opaque integer id that stays
valid until ``eject(id)``.

Dispatch order is part of the contract, not an accident of storage:
  - REQUEST handlers run in registration order.
  - RESPONSE handlers run in reverse registration order, so the most recently
    registered policy sees the rawest transport result first.

Example:
    chain = InterceptorChain(Phase.REQUEST)
    handler_id = chain.use(add_header)
    ...
    chain.eject(handler_id)
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator

from hc_httpx.types import Phase

Handler = Callable[[Any], Any | Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ChainEntry:
    """A registered pair of handlers."""

    id: int
    on_fulfilled: Handler | None
    on_rejected: Handler | None


class InterceptorChain:
    """Ordered collection of interceptor handler pairs for one phase."""

    def __init__(self, phase: Phase) -> None:
        self.phase = phase
        self._entries: dict[int, ChainEntry] = {}
        self._ids = itertools.count()

    def use(self, on_fulfilled: Handler | None = None, on_rejected: Handler | None = None) -> int:
        """Register a handler pair and return its id.

        Raises:
            TypeError: If neither handler is callable.
        """
        if on_fulfilled is None and on_rejected is None:
            raise TypeError("at least one handler is required")
        for handler in (on_fulfilled, on_rejected):
            if handler is not None and not callable(handler):
                raise TypeError("handlers must be callable")
        entry_id = next(self._ids)
        self._entries[entry_id] = ChainEntry(entry_id, on_fulfilled, on_rejected)
        return entry_id

    def eject(self, entry_id: int) -> None:
        """Remove a handler pair. Unknown ids are ignored."""
        self._entries.pop(entry_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def ids(self) -> list[int]:
        """Return registered ids in registration order."""
        return list(self._entries)

    def dispatch_order(self) -> list[ChainEntry]:
        """Return a snapshot of the entries in the order they must run."""
        entries = list(self._entries.values())
        if self.phase == Phase.RESPONSE:
            entries.reverse()
        return entries

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ChainEntry]:
        return iter(self.dispatch_order())


class Interceptors:
    """The request and response chains of one engine."""

    def __init__(self) -> None:
        self.request = InterceptorChain(Phase.REQUEST)
        self.response = InterceptorChain(Phase.RESPONSE)

    def chain(self, phase: Phase) -> InterceptorChain:
        if phase == Phase.REQUEST:
            return self.request
        return self.response

    def clear(self) -> None:
        self.request.clear()
        self.response.clear()
