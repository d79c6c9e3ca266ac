"""Circuit breaker wrapped around whole requests.

State transitions:
  - CLOSED -> OPEN: counted failures reach ``failure_threshold``. Failures
    older than ``monitoring_period_ms`` are forgotten.
  - OPEN -> HALF_OPEN: ``reset_timeout_ms`` elapsed since the last failure;
    evaluated lazily on the next call.
  - HALF_OPEN -> CLOSED: the single trial call succeeds.
  - HALF_OPEN -> OPEN: the trial call fails.

Only failures for which ``is_failure(error)`` is true are counted.

Typical usage:
    breaker = CircuitBreaker("api", CircuitBreakerOptions(failure_threshold=3))
    response = await breaker.call(engine.request, config)
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from hc_httpx.exceptions import CircuitBreakerOpenError
from hc_httpx.utils.async_utils import call_maybe_async

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _always(error: BaseException) -> bool:
    return True


@dataclass(frozen=True, slots=True)
class CircuitBreakerOptions:
    """Configuration for CircuitBreaker.

    Attributes:
        failure_threshold: Counted failures required to open the breaker.
        reset_timeout_ms: Time the breaker stays open before a trial call.
        monitoring_period_ms: Failures older than this no longer count.
        is_failure: Decides whether an error counts toward the threshold.
        half_open_max_calls: Trial calls allowed while half-open.
    """

    failure_threshold: int = 5
    reset_timeout_ms: float = 60_000
    monitoring_period_ms: float = 60_000
    is_failure: Callable[[BaseException], bool] = _always
    half_open_max_calls: int = 1


class CircuitBreaker:
    def __init__(
        self,
        name: str = "default",
        options: CircuitBreakerOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._failure_threshold = max(1, int(self.options.failure_threshold))
        self._half_open_max_calls = max(1, int(self.options.half_open_max_calls))
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_ms: float | None = None
        self._half_open_in_flight = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    async def call(self, func: Callable[..., T | Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker.

        Raises:
            CircuitBreakerOpenError: If the breaker rejects the call.
        """
        call_state = self._before_call()
        try:
            result = await call_maybe_async(func, *args, **kwargs)
        except Exception as exc:
            self._record_failure(call_state, exc)
            raise
        finally:
            if call_state == CircuitState.HALF_OPEN and self._half_open_in_flight > 0:
                self._half_open_in_flight -= 1
        self._record_success(call_state)
        return result

    def _before_call(self) -> CircuitState:
        now = self._now_ms()
        if self._last_failure_ms is not None and now - self._last_failure_ms > self.options.monitoring_period_ms:
            if self._state == CircuitState.CLOSED:
                self._failures = 0

        if self._state == CircuitState.OPEN:
            if self._last_failure_ms is not None and now - self._last_failure_ms >= self.options.reset_timeout_ms:
                self._enter(CircuitState.HALF_OPEN)
            else:
                raise self._open_error(now)

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_in_flight >= self._half_open_max_calls:
                raise self._open_error(now)
            self._half_open_in_flight += 1
        return self._state

    def _record_success(self, call_state: CircuitState) -> None:
        if call_state == CircuitState.HALF_OPEN and self._state == CircuitState.HALF_OPEN:
            self._enter(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failures = 0

    def _record_failure(self, call_state: CircuitState, error: BaseException) -> None:
        if not self.options.is_failure(error):
            return
        self._failures += 1
        self._last_failure_ms = self._now_ms()
        if call_state == CircuitState.HALF_OPEN or self._failures >= self._failure_threshold:
            self._enter(CircuitState.OPEN)

    def _enter(self, state: CircuitState) -> None:
        if state == self._state:
            return
        logger.warning("Circuit breaker %s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state
        if state == CircuitState.CLOSED:
            self._failures = 0
            self._half_open_in_flight = 0
        elif state == CircuitState.HALF_OPEN:
            self._half_open_in_flight = 0

    def _open_error(self, now: float) -> CircuitBreakerOpenError:
        retry_after_ms = 0
        if self._state == CircuitState.OPEN and self._last_failure_ms is not None:
            retry_after_ms = int(max(0.0, self.options.reset_timeout_ms - (now - self._last_failure_ms)))
        return CircuitBreakerOpenError(
            data={"name": self.name, "state": self._state.value, "retry_after_ms": retry_after_ms},
        )

    def reset(self) -> None:
        """Close the breaker and clear its counters."""
        self._enter(CircuitState.CLOSED)
        self._failures = 0
        self._last_failure_ms = None

    def trip(self) -> None:
        """Open the breaker manually."""
        self._last_failure_ms = self._now_ms()
        self._enter(CircuitState.OPEN)

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failures": self._failures,
            "last_failure_ms": self._last_failure_ms,
            "is_open": self._state == CircuitState.OPEN,
            "is_half_open": self._state == CircuitState.HALF_OPEN,
            "is_closed": self._state == CircuitState.CLOSED,
        }
