"""Interceptor registry: named groups and per-request conditional policies.

The manager never touches the interceptor chains directly. Every policy is
represented by a ``PolicySlot``; groups and conditionals only decide when a
slot is enabled and which gate it is installed with.

Typical usage:
    manager.create_group("secure", ["auth", "refresh_token", "retry"])
    manager.enable_group("secure")
    manager.add_conditional_interceptor(
        "logging", condition=url_matches("/api/"), config={"log_responses": False}
    )
    manager.enable_interceptor("logging")
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from pydantic import BaseModel, Field

from hc_httpx.chain import Interceptors
from hc_httpx.exceptions import NotFoundError, ValidationError
from hc_httpx.policies.base import PolicySlot
from hc_httpx.types import Phase, RequestConfig
from hc_httpx.utils.async_utils import call_maybe_async

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Any]

_MAX_RECORDED_ERRORS = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Group:
    """A named set of policies enabled and disabled together."""

    name: str
    members: tuple[str, ...]
    enabled: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    enabled_at: datetime | None = None
    disabled_at: datetime | None = None
    enabled_count: int = 0
    failed_count: int = 0


@dataclass
class GroupChange:
    """Outcome of enabling or disabling a group.

    Attributes:
        group: Group name.
        changed: False when the group was already in the requested state.
        applied: Members whose state was changed.
        failed: Member name mapped to the error message that stopped it.
    """

    group: str
    changed: bool = False
    applied: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ConditionalInterceptor:
    """Gate that admits a policy only for requests matching ``condition``.

    A condition that raises is treated as not matching; the error is kept in
    ``errors`` and the request proceeds without the policy.
    """

    def __init__(self, name: str, condition: Callable[[RequestConfig], bool], config: Any = None) -> None:
        self.name = name
        self.condition = condition
        self.config = config
        self.created_at = _utcnow()
        self.activation_count = 0
        self.last_activated: datetime | None = None
        self.errors: list[str] = []

    def allows(self, config: RequestConfig | None, *, record: bool = False) -> bool:
        if config is None:
            return False
        try:
            matched = bool(self.condition(config))
        except Exception as exc:
            self.errors.append(f"{type(exc).__name__}: {exc}")
            del self.errors[:-_MAX_RECORDED_ERRORS]
            logger.warning("Condition for %s raised; skipping policy", self.name, exc_info=True)
            return False
        if matched and record:
            self.activation_count += 1
            self.last_activated = _utcnow()
        return matched


class RegistrationStatus(BaseModel):
    name: str
    phase: Phase
    engine_id: int | None = None
    enabled: bool = False
    conditional: bool = False


class GroupStatus(BaseModel):
    members: list[str]
    enabled: bool
    created_at: datetime
    enabled_at: datetime | None = None
    disabled_at: datetime | None = None
    enabled_count: int = 0
    failed_count: int = 0


class ConditionalStatus(BaseModel):
    enabled: bool
    has_condition: bool = True
    activation_count: int = 0
    last_activated: datetime | None = None
    errors: list[str] = Field(default_factory=list)


class HealthStatus(BaseModel):
    healthy: bool
    stale: list[str] = Field(default_factory=list)
    request_chain: int = 0
    response_chain: int = 0
    unmanaged: int = 0


class ManagerStatus(BaseModel):
    """Registry snapshot read back from the live chains."""

    groups: dict[str, GroupStatus] = Field(default_factory=dict)
    conditional: dict[str, ConditionalStatus] = Field(default_factory=dict)
    interceptors: list[RegistrationStatus] = Field(default_factory=list)
    active_interceptors: list[str] = Field(default_factory=list)
    health: HealthStatus


class InterceptorManager:
    """Top-level authority over which policies are installed.

    Args:
        interceptors: The chains the slots install into.
        slots: Policy name mapped to the slot that installs it.
        defaults: Policy name mapped to the options used when a policy is
            enabled without explicit options.
    """

    def __init__(
        self,
        interceptors: Interceptors,
        slots: Mapping[str, PolicySlot],
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self.interceptors = interceptors
        self._slots = dict(slots)
        self._defaults = dict(defaults or {})
        self._groups: dict[str, Group] = {}
        self._conditionals: dict[str, ConditionalInterceptor] = {}
        self._cleanup_callbacks: list[CleanupCallback] = []

    @property
    def policy_names(self) -> list[str]:
        return list(self._slots)

    def slot(self, name: str) -> PolicySlot:
        try:
            return self._slots[name]
        except KeyError:
            raise NotFoundError(message=f"Unknown interceptor '{name}'", data={"name": name}) from None

    def is_enabled(self, name: str) -> bool:
        return self.slot(name).is_live()

    # Groups

    def create_group(self, name: str, members: Iterable[str]) -> Group:
        """Store a disabled group. Re-creating a name replaces the old group.

        Raises:
            ValidationError: If a member is not a known policy name.
        """
        if isinstance(members, str):
            members = [members]
        ordered = tuple(dict.fromkeys(members))
        unknown = [member for member in ordered if member not in self._slots]
        if unknown:
            raise ValidationError(
                message=f"Unknown interceptors in group '{name}': {', '.join(unknown)}",
                data={"group": name, "unknown": unknown, "known": self.policy_names},
            )
        previous = self._groups.get(name)
        if previous is not None and previous.enabled:
            self.disable_group(name)
        group = Group(name=name, members=ordered)
        self._groups[name] = group
        logger.debug("Created interceptor group %s with %s", name, list(ordered))
        return group

    def _group(self, name: str) -> Group:
        group = self._groups.get(name)
        if group is None:
            raise NotFoundError(message=f"Interceptor group '{name}' not found", data={"group": name})
        return group

    def enable_group(self, name: str) -> GroupChange:
        """Enable every member of the group that is not already enabled.

        A failing member is recorded in the result; the remaining members are
        still enabled.

        Raises:
            NotFoundError: If the group does not exist.
        """
        group = self._group(name)
        change = GroupChange(group=name)
        if group.enabled:
            logger.info("Interceptor group %s is already enabled", name)
            return change
        for member in group.members:
            try:
                if self._enable(member):
                    change.applied.append(member)
            except Exception as exc:
                change.failed[member] = str(exc)
                logger.warning("Failed to enable %s for group %s", member, name, exc_info=True)
        group.enabled = True
        group.enabled_at = _utcnow()
        group.enabled_count += 1
        group.failed_count += len(change.failed)
        change.changed = True
        return change

    def disable_group(self, name: str) -> GroupChange:
        """Disable every member of the group that is currently enabled.

        Raises:
            NotFoundError: If the group does not exist.
        """
        group = self._group(name)
        change = GroupChange(group=name)
        if not group.enabled:
            logger.info("Interceptor group %s is already disabled", name)
            return change
        for member in group.members:
            try:
                if self._disable(member):
                    change.applied.append(member)
            except Exception as exc:
                change.failed[member] = str(exc)
                logger.warning("Failed to disable %s for group %s", member, name, exc_info=True)
        group.enabled = False
        group.disabled_at = _utcnow()
        group.failed_count += len(change.failed)
        change.changed = True
        return change

    def toggle_group(self, name: str) -> bool:
        """Flip the group and return its new state."""
        if self._group(name).enabled:
            self.disable_group(name)
            return False
        self.enable_group(name)
        return True

    def delete_group(self, name: str) -> None:
        group = self._group(name)
        if group.enabled:
            self.disable_group(name)
        del self._groups[name]

    def is_group_enabled(self, name: str) -> bool:
        return self._group(name).enabled

    def get_group(self, name: str) -> Group:
        return self._group(name)

    def get_groups(self) -> list[str]:
        return list(self._groups)

    def clear_groups(self) -> list[str]:
        """Disable and forget every group. Returns the collected failures."""
        errors: list[str] = []
        for name in list(self._groups):
            try:
                change = self.disable_group(name)
            except Exception as exc:
                errors.append(f"group {name}: {exc}")
                continue
            errors.extend(f"group {name}/{member}: {reason}" for member, reason in change.failed.items())
        self._groups.clear()
        return errors

    # Conditionals

    def add_conditional_interceptor(
        self,
        name: str,
        condition: Callable[[RequestConfig], bool],
        config: Any = None,
    ) -> ConditionalInterceptor:
        """Register ``name`` as gated by ``condition``.

        An existing conditional of the same name is replaced; if it was
        installed, the replacement is installed in its place.

        Raises:
            ValidationError: If ``condition`` is not callable or ``name`` is
                not a known policy.
        """
        if not callable(condition):
            raise ValidationError(
                message=f"Condition for '{name}' must be callable",
                data={"name": name, "condition": repr(condition)},
            )
        if name not in self._slots:
            raise ValidationError(
                message=f"Unknown interceptor '{name}'",
                data={"name": name, "known": self.policy_names},
            )
        self.resolve_options(name, config)
        slot = self._slots[name]
        previous = self._conditionals.get(name)
        was_installed = previous is not None and slot.gate is previous and slot.enabled
        conditional = ConditionalInterceptor(name, condition, config)
        self._conditionals[name] = conditional
        if was_installed:
            slot.enable(self.resolve_options(name, config), gate=conditional)
        return conditional

    def use_conditional_interceptors(self, entries: Mapping[str, Mapping[str, Any]]) -> list[ConditionalInterceptor]:
        """Add several conditionals from ``{name: {"condition": ..., "config": ...}}``."""
        added = []
        for name, entry in entries.items():
            if not isinstance(entry, Mapping) or "condition" not in entry:
                raise ValidationError(message=f"Conditional '{name}' needs a condition", data={"name": name})
            added.append(self.add_conditional_interceptor(name, entry["condition"], entry.get("config")))
        return added

    def remove_conditional_interceptor(self, name: str) -> bool:
        """Drop the conditional and uninstall it if it is installed."""
        conditional = self._conditionals.pop(name, None)
        if conditional is None:
            return False
        slot = self._slots[name]
        if slot.gate is conditional:
            slot.disable()
        return True

    def get_conditional_interceptors(self) -> list[str]:
        return list(self._conditionals)

    def get_conditional(self, name: str) -> ConditionalInterceptor | None:
        return self._conditionals.get(name)

    def clear_conditional_interceptors(self) -> list[str]:
        errors: list[str] = []
        for name in list(self._conditionals):
            try:
                self.remove_conditional_interceptor(name)
            except Exception as exc:
                self._conditionals.pop(name, None)
                errors.append(f"conditional {name}: {exc}")
        return errors

    # Single interceptors

    def enable_interceptor(self, name: str, options: Any = None) -> bool:
        """Install ``name``, gated if a conditional is registered for it.

        Returns False when it was already installed and still live.

        Raises:
            NotFoundError: If ``name`` is not a known policy.
        """
        self.slot(name)
        return self._enable(name, options)

    def disable_interceptor(self, name: str) -> bool:
        """Uninstall ``name``. Returns False when it was not installed.

        Raises:
            NotFoundError: If ``name`` is not a known policy.
        """
        self.slot(name)
        return self._disable(name)

    def _enable(self, name: str, options: Any = None) -> bool:
        slot = self._slots[name]
        conditional = self._conditionals.get(name)
        if options is None and slot.is_live() and slot.gate is conditional:
            logger.debug("Interceptor %s is already enabled", name)
            return False
        if conditional is not None and options is None:
            options = conditional.config
        slot.enable(self.resolve_options(name, options), gate=conditional)
        return True

    def _disable(self, name: str) -> bool:
        slot = self._slots[name]
        if not slot.disable():
            logger.debug("Interceptor %s is already disabled", name)
            return False
        return True

    def resolve_options(self, name: str, options: Any) -> Any:
        """Turn ``options`` into the policy's options dataclass.

        ``None`` means the options last used for the slot, else the configured
        defaults. A mapping overrides fields of the configured defaults.

        Raises:
            ValidationError: If ``options`` has the wrong type or unknown fields.
        """
        slot = self._slots[name]
        options_type = slot.policy_type.options_type
        base = self._defaults.get(name)
        if options is None:
            return slot.options if slot.options is not None else base
        if isinstance(options, options_type):
            return options
        if isinstance(options, Mapping):
            try:
                return dataclasses.replace(base if base is not None else options_type(), **options)
            except TypeError as exc:
                raise ValidationError(
                    message=f"Invalid options for '{name}': {exc}",
                    data={"name": name, "options": sorted(options)},
                ) from exc
        raise ValidationError(
            message=f"Options for '{name}' must be {options_type.__name__} or a mapping",
            data={"name": name, "type": type(options).__name__},
        )

    # Introspection

    def registrations(self) -> list[RegistrationStatus]:
        """One entry per policy phase, read back from the chains."""
        entries = []
        for name, slot in self._slots.items():
            for phase in slot.policy_type.phases:
                engine_id = slot.ids.get(phase)
                if engine_id is not None and engine_id not in self.interceptors.chain(phase):
                    engine_id = None
                entries.append(
                    RegistrationStatus(
                        name=name,
                        phase=phase,
                        engine_id=engine_id,
                        enabled=engine_id is not None,
                        conditional=engine_id is not None and slot.gate is not None,
                    )
                )
        return entries

    def active_interceptors(self) -> list[str]:
        return [name for name, slot in self._slots.items() if slot.is_live()]

    def health(self) -> HealthStatus:
        stale = [name for name, slot in self._slots.items() if slot.enabled and not slot.is_live()]
        managed: dict[Phase, set[int]] = {Phase.REQUEST: set(), Phase.RESPONSE: set()}
        for slot in self._slots.values():
            for phase, engine_id in slot.ids.items():
                managed[phase].add(engine_id)
        request_ids = self.interceptors.request.ids()
        response_ids = self.interceptors.response.ids()
        unmanaged = len([i for i in request_ids if i not in managed[Phase.REQUEST]])
        unmanaged += len([i for i in response_ids if i not in managed[Phase.RESPONSE]])
        return HealthStatus(
            healthy=not stale,
            stale=stale,
            request_chain=len(request_ids),
            response_chain=len(response_ids),
            unmanaged=unmanaged,
        )

    def get_status(self) -> ManagerStatus:
        groups = {
            name: GroupStatus(
                members=list(group.members),
                enabled=group.enabled,
                created_at=group.created_at,
                enabled_at=group.enabled_at,
                disabled_at=group.disabled_at,
                enabled_count=group.enabled_count,
                failed_count=group.failed_count,
            )
            for name, group in self._groups.items()
        }
        conditional = {
            name: ConditionalStatus(
                enabled=self._slots[name].gate is item and self._slots[name].is_live(),
                activation_count=item.activation_count,
                last_activated=item.last_activated,
                errors=list(item.errors),
            )
            for name, item in self._conditionals.items()
        }
        return ManagerStatus(
            groups=groups,
            conditional=conditional,
            interceptors=self.registrations(),
            active_interceptors=self.active_interceptors(),
            health=self.health(),
        )

    # Teardown

    def add_cleanup_callback(self, callback: CleanupCallback) -> None:
        if not callable(callback):
            raise ValidationError(message="Cleanup callback must be callable")
        self._cleanup_callbacks.append(callback)

    def cleanup(self) -> list[str]:
        """Tear everything down. Never raises; returns the collected errors.

        Coroutine callbacks are not awaited here; use ``acleanup`` for those.
        """
        errors = self._teardown()
        for callback in self._cleanup_callbacks:
            try:
                callback()
            except Exception as exc:
                errors.append(f"callback {getattr(callback, '__name__', callback)!r}: {exc}")
                logger.warning("Cleanup callback failed", exc_info=True)
        return errors

    async def acleanup(self) -> list[str]:
        errors = self._teardown()
        for callback in self._cleanup_callbacks:
            try:
                await call_maybe_async(callback)
            except Exception as exc:
                errors.append(f"callback {getattr(callback, '__name__', callback)!r}: {exc}")
                logger.warning("Cleanup callback failed", exc_info=True)
        return errors

    def _teardown(self) -> list[str]:
        errors: list[str] = []
        for step in (self.clear_groups, self.clear_conditional_interceptors):
            try:
                errors.extend(step())
            except Exception as exc:
                errors.append(f"{step.__name__}: {exc}")
                logger.warning("Cleanup step %s failed", step.__name__, exc_info=True)
        for name, slot in self._slots.items():
            try:
                slot.disable()
            except Exception as exc:
                errors.append(f"interceptor {name}: {exc}")
                logger.warning("Failed to disable %s during cleanup", name, exc_info=True)
        if errors:
            logger.warning("Interceptor cleanup finished with %d errors", len(errors))
        return errors
