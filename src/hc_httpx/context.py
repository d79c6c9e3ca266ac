from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from hc_httpx.engine import HttpEngine


@dataclass
class ClientContext:
    """Per-client state shared by every policy.

    Attributes:
        engine: The engine policies replay requests through.
        clock: Monotonic clock in seconds.
        sleep: Coroutine used for delays.
        state: Free-form per-client scratch space.
    """

    engine: HttpEngine
    client_id: str = "default"
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    state: dict[str, Any] = field(default_factory=dict)

    def now_ms(self) -> float:
        return self.clock() * 1000.0
