"""HttpClient: the public facade over engine, policies and the registry.

A request issued through the client passes these wrappers, outermost first:

    dedupe -> circuit breaker -> queue -> engine (request chain, transport,
    response chain)

Replays started by the retry and refresh policies go straight to the engine,
so they stay inside the slot the original request already holds.

Example:
    async with HttpClient(base_url="https://api.example.com") as client:
        client.use_auth(AuthOptions(get_token=store.access_token)).use_retry()
        response = await client.get("/users", params={"page": 1})
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping

from pydantic import BaseModel, Field

from hc_httpx.batch import BatchCoalescer, BatchOptions
from hc_httpx.cancellation import CancellationRegistry, CancelToken
from hc_httpx.chain import Interceptors
from hc_httpx.circuit_breaker import CircuitBreaker, CircuitBreakerOptions
from hc_httpx.conditions import environment_matches
from hc_httpx.config import ClientConfig
from hc_httpx.context import ClientContext
from hc_httpx.dedupe import DedupeOptions, RequestDeduplicator
from hc_httpx.engine import ConfigLike, HttpEngine
from hc_httpx.exceptions import TransportTimeoutError
from hc_httpx.manager import GroupChange, InterceptorManager, ManagerStatus
from hc_httpx.mocking import MockingTransport, MockRule, UrlMatcher
from hc_httpx.observability.logging import configure_logging
from hc_httpx.policies import POLICY_TYPES, PolicySlot
from hc_httpx.presets import COMMON_GROUPS, DEVELOPMENT_PRESET, PRODUCTION_PRESET, PresetOverride, preset_options
from hc_httpx.request_queue import QueueOptions, RequestQueue, Settled, Thunk, run_concurrent
from hc_httpx.transport import Transport
from hc_httpx.types import Phase, RequestConfig, Response
from hc_httpx.utils.async_utils import call_maybe_async, maybe_await

logger = logging.getLogger(__name__)


def _fresh_config(config: ConfigLike) -> ConfigLike:
    """Copy ``config`` so a repeated request starts with clean bookkeeping."""
    if isinstance(config, RequestConfig):
        return config.model_copy(update={"meta": {}, "headers": dict(config.headers), "params": dict(config.params)})
    return dict(config or {})


class ActiveInterceptor(BaseModel):
    name: str
    id: int


class ActiveInterceptors(BaseModel):
    request: list[ActiveInterceptor] = Field(default_factory=list)
    response: list[ActiveInterceptor] = Field(default_factory=list)


class ClientSnapshot(BaseModel):
    """Point-in-time description of a client, safe to serialize."""

    timestamp: datetime
    client_id: str
    base_url: str | None = None
    timeout_ms: float | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    active_interceptors: ActiveInterceptors
    groups: list[str] = Field(default_factory=list)
    conditional_interceptors: list[str] = Field(default_factory=list)
    status: ManagerStatus
    stats: dict[str, Any] = Field(default_factory=dict)


class HttpClient:
    """Async HTTP client with switchable interceptor policies.

    Args:
        transport: Transport to send through; defaults to an httpx transport.
        base_url: Prefix for relative request URLs.
        headers: Default headers, applied only when a request lacks them.
        timeout_ms: Default timeout applied at dispatch to requests without one.
        config: Construction-time settings; explicit arguments win over it.
        clock: Monotonic clock in seconds, shared by every time-based policy.
        sleep: Coroutine used for retry delays.
    """

    def __init__(
        self,
        transport: Transport | None = None,
        *,
        base_url: str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_ms: float | None = None,
        config: ClientConfig | Mapping[str, Any] | None = None,
        client_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = ClientConfig.from_dict(config)
        self.client_id = client_id or self.config.client_id
        if self.config.log_format is not None:
            configure_logging(self.config.log_format)

        timeout_ms = timeout_ms if timeout_ms is not None else self.config.timeout_ms
        self.timeout_ms = timeout_ms
        self.engine = HttpEngine(
            transport,
            base_url=base_url if base_url is not None else self.config.base_url,
            headers={**self.config.headers, **dict(headers or {})},
            timeout=timeout_ms / 1000.0 if timeout_ms is not None else None,
            client_id=self.client_id,
        )
        self.context = ClientContext(engine=self.engine, client_id=self.client_id, clock=clock, sleep=sleep)
        self._slots: dict[str, PolicySlot] = {
            name: PolicySlot(policy_type, self.context, self.engine.interceptors, options=self.config.policies.get(name))
            for name, policy_type in POLICY_TYPES.items()
        }
        self.manager = InterceptorManager(self.engine.interceptors, self._slots, self.config.policies)
        self.cancellation = CancellationRegistry()

        self._dedupe: RequestDeduplicator | None = None
        self._queue: RequestQueue | None = None
        self._breaker: CircuitBreaker | None = None
        self._batchers: list[BatchCoalescer] = []
        self._mocking: MockingTransport | None = None

        if self.config.dedupe is not None:
            self.use_dedupe(self.config.dedupe)
        if self.config.queue is not None:
            self.use_queue(self.config.queue)
        if self.config.circuit_breaker is not None:
            self.with_circuit_breaker(self.config.circuit_breaker)
        for name, members in self.config.groups.items():
            self.manager.create_group(name, members)
        for name in self.config.enabled_groups:
            change = self.manager.enable_group(name)
            if not change.ok:
                logger.warning("Group %s enabled with failures: %s", name, change.failed)

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    @property
    def interceptors(self) -> Interceptors:
        return self.engine.interceptors

    # Requests

    async def request(self, config: ConfigLike = None, **overrides: Any) -> Response:
        merged = self.engine.merge_config(config, **overrides)
        if self._dedupe is not None:
            task = self._dedupe.submit(merged, self._guarded)
            return await asyncio.shield(task)
        return await self._guarded(merged)

    async def _guarded(self, config: RequestConfig) -> Response:
        if self._breaker is not None:
            return await self._breaker.call(self._queued, config)
        return await self._queued(config)

    async def _queued(self, config: RequestConfig) -> Response:
        if self._queue is not None:
            return await self._queue.add(lambda: self.engine.request(config))
        return await self.engine.request(config)

    async def get(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="GET", url=url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="DELETE", url=url, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="HEAD", url=url, **kwargs)

    async def options(self, url: str, **kwargs: Any) -> Response:
        return await self.request(method="OPTIONS", url=url, **kwargs)

    async def post(self, url: str, data: Any = None, **kwargs: Any) -> Response:
        return await self.request(method="POST", url=url, data=data, **kwargs)

    async def put(self, url: str, data: Any = None, **kwargs: Any) -> Response:
        return await self.request(method="PUT", url=url, data=data, **kwargs)

    async def patch(self, url: str, data: Any = None, **kwargs: Any) -> Response:
        return await self.request(method="PATCH", url=url, data=data, **kwargs)

    # Cancellation

    def create_cancel_token(self, key: str) -> CancelToken:
        return self.cancellation.create(key)

    async def cancellable(self, key: str, config: ConfigLike = None, **overrides: Any) -> Response:
        """Issue a request that ``cancel(key)`` can abort.

        A newer cancellable request under the same key cancels this one.
        """
        token = self.cancellation.create(key)
        try:
            return await self.request(config, cancel_token=token, **overrides)
        finally:
            if self.cancellation.get(key) is token:
                self.cancellation.cancel(key, reason="finished")

    def cancel(self, key: str, reason: str | None = None) -> bool:
        return self.cancellation.cancel(key, reason)

    def cancel_all(self, reason: str | None = None) -> int:
        return self.cancellation.cancel_all(reason)

    # Policies

    def _use(self, name: str, options: Any, overrides: Mapping[str, Any]) -> "HttpClient":
        if overrides:
            if options is not None:
                raise TypeError("pass either an options object or keyword options, not both")
            options = dict(overrides)
        self._slots[name].enable(self.manager.resolve_options(name, options))
        return self

    def _remove(self, name: str) -> "HttpClient":
        self._slots[name].disable()
        return self

    def use_auth(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("auth", options, kwargs)

    def remove_auth(self) -> "HttpClient":
        return self._remove("auth")

    def use_refresh_token(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("refresh_token", options, kwargs)

    def remove_refresh_token(self) -> "HttpClient":
        return self._remove("refresh_token")

    def use_retry(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("retry", options, kwargs)

    def remove_retry(self) -> "HttpClient":
        return self._remove("retry")

    def use_cache(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("cache", options, kwargs)

    def remove_cache(self) -> "HttpClient":
        return self._remove("cache")

    def use_rate_limit(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("rate_limit", options, kwargs)

    def remove_rate_limit(self) -> "HttpClient":
        return self._remove("rate_limit")

    def use_logging(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("logging", options, kwargs)

    def remove_logging(self) -> "HttpClient":
        return self._remove("logging")

    def use_smart_timeout(self, options: Any = None, **kwargs: Any) -> "HttpClient":
        return self._use("smart_timeout", options, kwargs)

    def remove_smart_timeout(self) -> "HttpClient":
        return self._remove("smart_timeout")

    def policy(self, name: str) -> Any:
        """The live policy instance for ``name``, or None when not installed."""
        slot = self.manager.slot(name)
        return slot.policy if slot.enabled else None

    # Request wrappers

    def use_dedupe(self, options: DedupeOptions | None = None, **kwargs: Any) -> "HttpClient":
        if options is None:
            options = DedupeOptions(**kwargs)
        self._dedupe = RequestDeduplicator(options, clock=self.context.clock)
        return self

    def remove_dedupe(self) -> "HttpClient":
        self._dedupe = None
        return self

    def clear_dedupe(self) -> int:
        return self._dedupe.clear() if self._dedupe is not None else 0

    def dedupe_stats(self) -> dict[str, Any] | None:
        return self._dedupe.stats() if self._dedupe is not None else None

    def use_queue(self, options: QueueOptions | int | None = None) -> "HttpClient":
        """Route every request through a concurrency-bounded FIFO queue.

        Raises:
            ValidationError: If ``max_concurrent`` is smaller than 1.
        """
        self._queue = RequestQueue(options)
        return self

    def remove_queue(self) -> "HttpClient":
        queue, self._queue = self._queue, None
        if queue is not None and queue.queued:
            logger.info("Queue removed with %d requests still waiting", queue.queued)
        return self

    @property
    def queue(self) -> RequestQueue | None:
        return self._queue

    def with_circuit_breaker(self, options: CircuitBreakerOptions | None = None, **kwargs: Any) -> "HttpClient":
        if options is None:
            options = CircuitBreakerOptions(**kwargs)
        self._breaker = CircuitBreaker(self.client_id, options, clock=self.context.clock)
        return self

    def remove_circuit_breaker(self) -> "HttpClient":
        self._breaker = None
        return self

    def circuit_breaker_status(self) -> dict[str, Any] | None:
        return self._breaker.status() if self._breaker is not None else None

    def reset_circuit_breaker(self) -> "HttpClient":
        if self._breaker is not None:
            self._breaker.reset()
        return self

    def open_circuit_breaker(self) -> "HttpClient":
        if self._breaker is not None:
            self._breaker.trip()
        return self

    def create_batcher(self, options: BatchOptions | None = None, **kwargs: Any) -> BatchCoalescer:
        """Coalescer whose multiplexed calls go through this client."""
        if options is None:
            options = self.config.batch if not kwargs and self.config.batch is not None else BatchOptions(**kwargs)
        batcher = BatchCoalescer(self.request, options)
        self._batchers.append(batcher)
        return batcher

    # Mocking

    def mock(self, rules: MockRule | Mapping[str, Any] | list[MockRule | Mapping[str, Any]]) -> "HttpClient":
        """Answer matching requests from ``rules`` instead of the network.

        Mocked requests still pass through every interceptor.
        """
        if self._mocking is None:
            self._mocking = MockingTransport(self.engine.transport, sleep=self.context.sleep)
            self.engine.transport = self._mocking
        self._mocking.add(rules)
        return self

    def get_mocks(self) -> list[MockRule]:
        return list(self._mocking.rules) if self._mocking is not None else []

    def remove_mock(self, url: UrlMatcher, method: str = "GET") -> "HttpClient":
        if self._mocking is None:
            return self
        self._mocking.remove(url, method)
        if not self._mocking.rules:
            self.clear_mocks()
        return self

    def clear_mocks(self) -> "HttpClient":
        mocking, self._mocking = self._mocking, None
        if mocking is not None:
            self.engine.transport = mocking.inner
        return self

    # Utilities

    async def concurrent(self, requests: Iterable[Thunk | ConfigLike], limit: int = 5) -> list[Settled]:
        """Run requests at most ``limit`` at a time, collecting every outcome.

        Items are thunks or request configs. Results keep submission order.

        Raises:
            ValidationError: If ``limit`` is smaller than 1.
        """
        thunks = [item if callable(item) else (lambda config=item: self.request(config)) for item in requests]
        return await run_concurrent(thunks, limit)

    async def poll(
        self,
        config: ConfigLike,
        *,
        interval_ms: float = 1000,
        timeout_ms: float = 30_000,
        should_stop: Callable[[Response], Any] | None = None,
        on_progress: Callable[[Response], Any] | None = None,
        stop_on_error: bool = False,
    ) -> Response:
        """Repeat a request until ``should_stop(response)`` is true.

        Every attempt sends a fresh copy of ``config``. Failed attempts are
        skipped unless ``stop_on_error`` is set.

        Raises:
            TransportTimeoutError: If ``timeout_ms`` elapses first.
        """
        started = self.context.now_ms()
        attempts = 0
        while self.context.now_ms() - started < timeout_ms:
            attempts += 1
            try:
                response = await self.request(_fresh_config(config))
            except Exception:
                if stop_on_error:
                    raise
                logger.debug("Poll attempt %d failed", attempts, exc_info=True)
            else:
                if should_stop is not None and await maybe_await(should_stop(response)):
                    return response
                if on_progress is not None:
                    await call_maybe_async(on_progress, response)
            await self.context.sleep(interval_ms / 1000.0)
        raise TransportTimeoutError(
            message="Polling timeout exceeded",
            data={"timeout_ms": timeout_ms, "attempts": attempts},
        )

    async def request_with_timeout(self, config: ConfigLike, timeout_ms: float, **overrides: Any) -> Response:
        """Bound the whole call, replays included, by ``timeout_ms``.

        Raises:
            TransportTimeoutError: If the call has not settled in time.
        """
        merged = self.engine.merge_config(config, **overrides)
        try:
            return await asyncio.wait_for(self.request(merged), timeout_ms / 1000.0)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                message=f"Request exceeded {timeout_ms:g}ms",
                config=merged,
                data={"timeout_ms": timeout_ms},
                cause=exc,
            ) from exc

    # Registry delegation

    def create_group(self, name: str, members: list[str]) -> "HttpClient":
        self.manager.create_group(name, members)
        return self

    def enable_group(self, name: str) -> GroupChange:
        return self.manager.enable_group(name)

    def disable_group(self, name: str) -> GroupChange:
        return self.manager.disable_group(name)

    def toggle_group(self, name: str) -> bool:
        return self.manager.toggle_group(name)

    def setup_common_groups(self) -> "HttpClient":
        for name, members in COMMON_GROUPS.items():
            self.manager.create_group(name, members)
        return self

    # Presets

    def setup_auth(self, get_token: Any = None, refresh: Any = None) -> "HttpClient":
        """Install auth from ``get_token`` and token refresh from ``refresh`` options."""
        if get_token is not None:
            self.use_auth(get_token=get_token)
        if refresh is not None:
            self.use_refresh_token(refresh)
        return self

    def setup_environment_interceptors(self, environment: str | None = None) -> "HttpClient":
        """Gate the logging policy to the development environment.

        With no ``environment`` the ``HC_HTTPX_ENV`` variable is read on
        every request.
        """
        if environment is None:
            condition = environment_matches("development")
        else:
            is_development = environment == "development"

            def condition(config: RequestConfig) -> bool:
                return is_development

        self.manager.add_conditional_interceptor("logging", condition)
        return self

    def setup_development(self, *, environment: str | None = None, **overrides: PresetOverride) -> "HttpClient":
        """Enable the development group with verbose logging and retries.

        Keyword overrides (``logging``, ``retry``, ``smart_timeout``) adjust
        a preset entry with a mapping, or drop it with ``False``.
        """
        options = preset_options(DEVELOPMENT_PRESET, overrides)
        self.setup_common_groups()
        self.manager.enable_group("development")
        self.setup_environment_interceptors(environment)
        for name, values in options.items():
            self.manager.enable_interceptor(name, values)
        return self

    def setup_production(
        self,
        *,
        auth: Mapping[str, Any] | None = None,
        environment: str | None = None,
        **overrides: PresetOverride,
    ) -> "HttpClient":
        """Enable the production group with backoff, caching and rate limiting.

        ``auth`` takes ``setup_auth`` arguments. Keyword overrides (``retry``,
        ``cache``, ``rate_limit``, ``smart_timeout``) adjust a preset entry
        with a mapping, or drop it with ``False``.
        """
        options = preset_options(PRODUCTION_PRESET, overrides)
        self.setup_common_groups()
        self.manager.enable_group("production")
        self.setup_environment_interceptors(environment)
        if auth:
            self.setup_auth(**auth)
        for name, values in options.items():
            self.manager.enable_interceptor(name, values)
        return self

    def add_conditional_interceptor(
        self, name: str, condition: Callable[[RequestConfig], bool], config: Any = None
    ) -> "HttpClient":
        self.manager.add_conditional_interceptor(name, condition, config)
        return self

    def remove_conditional_interceptor(self, name: str) -> "HttpClient":
        self.manager.remove_conditional_interceptor(name)
        return self

    def enable_interceptor(self, name: str, options: Any = None) -> bool:
        return self.manager.enable_interceptor(name, options)

    def disable_interceptor(self, name: str) -> bool:
        return self.manager.disable_interceptor(name)

    def is_interceptor_enabled(self, name: str) -> bool:
        return self.manager.is_enabled(name)

    def get_status(self) -> ManagerStatus:
        return self.manager.get_status()

    # Introspection

    def get_active_interceptors(self) -> ActiveInterceptors:
        active = ActiveInterceptors()
        for entry in self.manager.registrations():
            if entry.engine_id is None:
                continue
            target = active.request if entry.phase == Phase.REQUEST else active.response
            target.append(ActiveInterceptor(name=entry.name, id=entry.engine_id))
        return active

    def get_stats(self) -> dict[str, Any]:
        active = self.get_active_interceptors()
        return {
            "interceptors": {
                "request": len(active.request),
                "response": len(active.response),
                "total": len(active.request) + len(active.response),
            },
            "policies": {
                name: slot.policy.stats() for name, slot in self._slots.items() if slot.enabled and slot.policy
            },
            "queue": self._queue.stats() if self._queue is not None else None,
            "interceptor_manager": {
                "groups": len(self.manager.get_groups()),
                "conditional_interceptors": len(self.manager.get_conditional_interceptors()),
            },
            "circuit_breaker": self.circuit_breaker_status(),
            "dedupe": self.dedupe_stats(),
            "batchers": [batcher.stats() for batcher in self._batchers],
            "pending_cancellations": len(self.cancellation),
        }

    def create_snapshot(self) -> ClientSnapshot:
        return ClientSnapshot(
            timestamp=datetime.now(timezone.utc),
            client_id=self.client_id,
            base_url=self.engine.base_url,
            timeout_ms=self.timeout_ms,
            headers=dict(self.engine.headers),
            active_interceptors=self.get_active_interceptors(),
            groups=self.manager.get_groups(),
            conditional_interceptors=self.manager.get_conditional_interceptors(),
            status=self.manager.get_status(),
            stats=self.get_stats(),
        )

    def export_config(self) -> str:
        return self.create_snapshot().model_dump_json(indent=2)

    # Teardown

    def reset(self) -> list[str]:
        """Remove every policy, group and conditional and clear wrapper state.

        Never raises; returns the collected errors.
        """
        errors = self.manager.cleanup()
        for label, step in (
            ("dedupe", self.clear_dedupe),
            ("circuit_breaker", self.reset_circuit_breaker),
            ("queue", lambda: self._queue.clear("client reset") if self._queue is not None else 0),
            ("cancellation", lambda: self.cancellation.cancel_all("client reset")),
            ("mocks", self.clear_mocks),
        ):
            try:
                step()
            except Exception as exc:
                errors.append(f"{label}: {exc}")
                logger.warning("Reset step %s failed", label, exc_info=True)
        return errors

    async def aclose(self) -> list[str]:
        """Reset, stop batchers and the queue, and close the transport."""
        errors = await self.manager.acleanup()
        self.cancellation.cancel_all("client closed")
        for batcher in self._batchers:
            try:
                await batcher.aclose()
            except Exception as exc:
                errors.append(f"batcher: {exc}")
                logger.warning("Failed to close batcher", exc_info=True)
        if self._queue is not None:
            await self._queue.aclose()
        try:
            await self.engine.aclose()
        except Exception as exc:
            errors.append(f"transport: {exc}")
            logger.warning("Failed to close transport", exc_info=True)
        return errors
