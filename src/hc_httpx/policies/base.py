"""Policy base class and chain installation.

A policy is a named, stateful pair of hooks. ``install`` turns it into one
registration per phase the policy declares; ``PolicySlot`` tracks those
registrations so a policy is never installed twice and never ejected twice.
"""

from __future__ import annotations

import logging
from abc import ABC
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ClassVar, Protocol

from hc_httpx.chain import Interceptors
from hc_httpx.context import ClientContext
from hc_httpx.exceptions import config_of
from hc_httpx.types import Phase, RequestConfig, Response

logger = logging.getLogger(__name__)

HookResult = Any | Awaitable[Any]


class Gate(Protocol):
    """Per-request admission check for a gated policy."""

    def allows(self, config: RequestConfig | None, *, record: bool = False) -> bool: ...


class InterceptorPolicy(ABC):
    """Base class for interceptor policies.

    Subclasses set ``name`` and ``phases`` and override the hooks they need.
    Every hook may be sync or async and may return ``None`` to pass the
    current value (or error) through unchanged.
    """

    name: ClassVar[str]
    phases: ClassVar[tuple[Phase, ...]] = (Phase.REQUEST,)
    options_type: ClassVar[type]

    def __init__(self, context: ClientContext, options: Any = None) -> None:
        self.context = context
        self.options = options if options is not None else self.options_type()

    def on_request(self, config: RequestConfig) -> HookResult:
        return None

    def on_request_error(self, error: Exception) -> HookResult:
        return None

    def on_response(self, response: Response) -> HookResult:
        return None

    def on_response_error(self, error: Exception) -> HookResult:
        return None

    def reset(self) -> None:
        """Drop any state the policy accumulated."""

    def stats(self) -> dict[str, Any]:
        return {}


def _gated(
    hook: Callable[[Any], HookResult],
    gate: Gate | None,
    config_for: Callable[[Any], RequestConfig | None],
    *,
    record: bool = False,
) -> Callable[[Any], HookResult]:
    if gate is None:
        return hook

    def wrapper(value: Any) -> HookResult:
        if not gate.allows(config_for(value), record=record):
            return None
        return hook(value)

    return wrapper


def _response_config(response: Any) -> RequestConfig | None:
    return getattr(response, "config", None)


def _request_config(config: Any) -> RequestConfig | None:
    return config if isinstance(config, RequestConfig) else None


def install(policy: InterceptorPolicy, interceptors: Interceptors, gate: Gate | None = None) -> dict[Phase, int]:
    """Register the policy's hooks and return the chain ids per phase."""
    ids: dict[Phase, int] = {}
    if Phase.REQUEST in policy.phases:
        ids[Phase.REQUEST] = interceptors.request.use(
            _gated(policy.on_request, gate, _request_config, record=True),
            _gated(policy.on_request_error, gate, config_of),
        )
    if Phase.RESPONSE in policy.phases:
        # response-only policies count activations on the response side
        record = Phase.REQUEST not in policy.phases
        ids[Phase.RESPONSE] = interceptors.response.use(
            _gated(policy.on_response, gate, _response_config, record=record),
            _gated(policy.on_response_error, gate, config_of, record=record),
        )
    return ids


class PolicySlot:
    """Lifecycle holder for one named policy on one client.

    The policy instance is created on ``enable`` and reset on ``disable``, so
    its state lives exactly as long as its registrations.
    """

    def __init__(
        self,
        policy_type: type[InterceptorPolicy],
        context: ClientContext,
        interceptors: Interceptors,
        *,
        options: Any = None,
    ) -> None:
        self.policy_type = policy_type
        self.name = policy_type.name
        self.context = context
        self.interceptors = interceptors
        self.options = options
        self.policy: InterceptorPolicy | None = None
        self.gate: Gate | None = None
        self.ids: dict[Phase, int] = {}
        self.enabled_at: datetime | None = None
        self.disabled_at: datetime | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.ids)

    def enable(self, options: Any = None, *, gate: Gate | None = None) -> dict[Phase, int]:
        """(Re)install the policy, ejecting any previous registration first."""
        self.disable()
        if options is not None:
            self.options = options
        self.policy = self.policy_type(self.context, self.options)
        self.gate = gate
        self.ids = install(self.policy, self.interceptors, gate)
        self.enabled_at = datetime.now(timezone.utc)
        logger.debug("Installed policy %s with ids %s", self.name, self.ids)
        return dict(self.ids)

    def disable(self) -> bool:
        """Eject the registrations. Returns False if the policy was not installed."""
        if not self.ids:
            return False
        ids, self.ids = self.ids, {}
        for phase, entry_id in ids.items():
            self.interceptors.chain(phase).eject(entry_id)
        self.gate = None
        self.disabled_at = datetime.now(timezone.utc)
        if self.policy is not None:
            self.policy.reset()
        logger.debug("Ejected policy %s", self.name)
        return True

    def is_live(self) -> bool:
        """True when every recorded id is still present in its chain."""
        return self.enabled and all(entry_id in self.interceptors.chain(phase) for phase, entry_id in self.ids.items())
