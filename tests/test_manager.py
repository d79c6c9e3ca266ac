from __future__ import annotations

import pytest

from conftest import RecordingTransport
from hc_httpx.conditions import url_matches
from hc_httpx.exceptions import NotFoundError, TransportError, ValidationError
from hc_httpx.policies import CacheOptions, RateLimitOptions
from hc_httpx.types import Phase


def test_unknown_members_and_groups_are_rejected(make_client) -> None:
    manager = make_client().manager

    with pytest.raises(ValidationError) as excinfo:
        manager.create_group("bad", ["auth", "teleport"])
    assert excinfo.value.data["unknown"] == ["teleport"]
    assert manager.get_groups() == []

    with pytest.raises(NotFoundError):
        manager.enable_group("missing")
    with pytest.raises(NotFoundError):
        manager.disable_group("missing")
    with pytest.raises(NotFoundError):
        manager.enable_interceptor("teleport")


def test_group_enable_installs_every_member_once(make_client) -> None:
    client = make_client()
    manager = client.manager
    manager.create_group("secure", ["auth", "retry", "auth"])

    change = manager.enable_group("secure")

    assert change.changed and change.ok
    assert change.applied == ["auth", "retry"]
    assert manager.active_interceptors() == ["auth", "retry"]
    enabled = {entry.name: entry.enabled for entry in client.get_status().interceptors}
    assert enabled["auth"] is True
    assert enabled["retry"] is True
    assert len(client.interceptors.request) == 1
    assert len(client.interceptors.response) == 1

    again = manager.enable_group("secure")
    assert again.changed is False
    assert len(client.interceptors.request) == 1
    assert manager.get_group("secure").enabled_count == 1


def test_group_disable_and_toggle(make_client) -> None:
    client = make_client()
    manager = client.manager
    manager.create_group("secure", ["auth", "retry"])
    manager.enable_group("secure")

    change = manager.disable_group("secure")

    assert change.applied == ["auth", "retry"]
    assert manager.active_interceptors() == []
    enabled = {entry.name: entry.enabled for entry in client.get_status().interceptors}
    assert enabled["auth"] is False
    assert enabled["retry"] is False
    assert len(client.interceptors.request) == 0
    assert manager.disable_group("secure").changed is False

    assert manager.toggle_group("secure") is True
    assert manager.is_group_enabled("secure") is True
    assert manager.toggle_group("secure") is False


def test_member_already_enabled_is_not_reinstalled(make_client) -> None:
    client = make_client().use_retry()
    retry_ids = dict(client.manager.slot("retry").ids)
    client.manager.create_group("g", ["retry", "cache"])

    change = client.manager.enable_group("g")

    assert change.applied == ["cache"]
    assert client.manager.slot("retry").ids == retry_ids


def test_failing_member_is_reported_and_others_still_enabled(make_client) -> None:
    client = make_client()
    manager = client.manager
    manager.slot("rate_limit").options = RateLimitOptions(max_requests="not a number")  # type: ignore[arg-type]
    manager.create_group("prod", ["auth", "rate_limit", "retry"])

    change = manager.enable_group("prod")

    assert change.ok is False
    assert list(change.failed) == ["rate_limit"]
    assert change.applied == ["auth", "retry"]
    assert manager.is_enabled("rate_limit") is False
    assert manager.get_group("prod").failed_count == 1


def test_recreating_an_enabled_group_disables_the_old_one(make_client) -> None:
    manager = make_client().manager
    manager.create_group("g", ["auth"])
    manager.enable_group("g")

    manager.create_group("g", ["retry"])

    assert manager.is_enabled("auth") is False
    assert manager.is_group_enabled("g") is False


def test_status_is_read_back_from_the_chains(make_client) -> None:
    client = make_client().use_auth(get_token=lambda: "t")
    manager = client.manager
    slot = manager.slot("auth")

    client.interceptors.request.eject(slot.ids[Phase.REQUEST])

    assert manager.is_enabled("auth") is False
    assert "auth" not in manager.active_interceptors()
    health = manager.health()
    assert health.healthy is False
    assert health.stale == ["auth"]
    auth_entry = next(entry for entry in manager.registrations() if entry.name == "auth")
    assert auth_entry.engine_id is None

    assert manager.enable_interceptor("auth") is True
    assert manager.health().healthy is True
    assert manager.enable_interceptor("auth") is False


def test_unmanaged_handlers_are_counted(make_client) -> None:
    client = make_client()
    client.interceptors.request.use(lambda config: None)

    assert client.manager.health().unmanaged == 1


def test_disable_interceptor_reports_whether_it_was_installed(make_client) -> None:
    client = make_client().use_cache()

    assert client.disable_interceptor("cache") is True
    assert client.disable_interceptor("cache") is False
    assert client.is_interceptor_enabled("cache") is False


def test_enable_interceptor_accepts_mapping_overrides(make_client) -> None:
    client = make_client()

    client.enable_interceptor("cache", {"max_size": 3})

    assert client.manager.slot("cache").options == CacheOptions(max_size=3)
    with pytest.raises(ValidationError):
        client.enable_interceptor("cache", {"no_such_field": 1})
    with pytest.raises(ValidationError):
        client.enable_interceptor("cache", ["wrong"])


@pytest.mark.asyncio
async def test_conditional_policy_only_applies_to_matching_requests(make_client) -> None:
    transport = RecordingTransport()
    client = make_client(transport)
    client.add_conditional_interceptor("auth", url_matches("/api/"), {"get_token": lambda: "secret"})
    client.enable_interceptor("auth")

    await client.get("/api/orders")
    await client.get("/public/docs")

    assert transport.sent_headers[0]["Authorization"] == "Bearer secret"
    assert "Authorization" not in transport.sent_headers[1]
    status = client.get_status().conditional["auth"]
    assert status.enabled is True
    assert status.activation_count == 1
    assert client.get_status().interceptors[0].conditional is True


@pytest.mark.asyncio
async def test_conditional_response_policy_records_activations(make_client) -> None:
    state = {"calls": 0}

    def handler(config):
        state["calls"] += 1
        if state["calls"] == 1:
            return TransportError(message="connection reset", config=config)
        return {"status": 200}

    client = make_client(RecordingTransport(handler))
    client.add_conditional_interceptor("retry", lambda config: True, {"retries": 1, "delay_ms": 0})
    client.enable_interceptor("retry")

    response = await client.get("/jobs")

    assert response.status == 200
    assert state["calls"] == 2
    status = client.get_status().conditional["retry"]
    # the failed call and its replay
    assert status.activation_count == 2
    assert status.last_activated is not None


@pytest.mark.asyncio
async def test_raising_condition_skips_the_policy_and_records_error(make_client) -> None:
    transport = RecordingTransport()
    client = make_client(transport)

    def broken(config):
        raise KeyError("tenant")

    client.add_conditional_interceptor("auth", broken, {"get_token": lambda: "secret"})
    client.enable_interceptor("auth")

    response = await client.get("/api/orders")

    assert response.status == 200
    assert "Authorization" not in transport.sent_headers[0]
    assert client.get_status().conditional["auth"].errors == ["KeyError: 'tenant'"]


@pytest.mark.asyncio
async def test_replacing_an_installed_conditional_reinstalls_it(make_client) -> None:
    transport = RecordingTransport()
    client = make_client(transport)
    manager = client.manager
    manager.add_conditional_interceptor("auth", url_matches("/a"), {"get_token": lambda: "one"})
    manager.enable_interceptor("auth")

    replacement = manager.add_conditional_interceptor("auth", url_matches("/b"), {"get_token": lambda: "two"})
    await client.get("/a")
    await client.get("/b")

    assert manager.slot("auth").gate is replacement
    assert "Authorization" not in transport.sent_headers[0]
    assert transport.sent_headers[1]["Authorization"] == "Bearer two"


def test_removing_a_conditional_uninstalls_it(make_client) -> None:
    client = make_client()
    manager = client.manager
    manager.add_conditional_interceptor("retry", lambda config: True)
    manager.enable_interceptor("retry")

    assert manager.remove_conditional_interceptor("retry") is True
    assert manager.remove_conditional_interceptor("retry") is False
    assert manager.is_enabled("retry") is False
    assert manager.get_conditional_interceptors() == []


def test_conditional_validation(make_client) -> None:
    manager = make_client().manager

    with pytest.raises(ValidationError):
        manager.add_conditional_interceptor("auth", "not callable")  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        manager.add_conditional_interceptor("teleport", lambda config: True)
    with pytest.raises(ValidationError):
        manager.add_conditional_interceptor("cache", lambda config: True, {"bogus": 1})
    with pytest.raises(ValidationError):
        manager.use_conditional_interceptors({"cache": {"config": {}}})


def test_use_conditional_interceptors_registers_several(make_client) -> None:
    manager = make_client().manager

    manager.use_conditional_interceptors(
        {
            "auth": {"condition": url_matches("/api/")},
            "cache": {"condition": lambda config: True, "config": {"max_size": 5}},
        }
    )

    assert manager.get_conditional_interceptors() == ["auth", "cache"]
    assert manager.get_conditional("cache").config == {"max_size": 5}


def test_cleanup_removes_everything_and_collects_callback_errors(make_client) -> None:
    client = make_client().use_retry().use_cache()
    manager = client.manager
    manager.create_group("g", ["auth"])
    manager.enable_group("g")
    manager.add_conditional_interceptor("logging", lambda config: True)
    manager.enable_interceptor("logging")
    calls: list[str] = []

    def explode() -> None:
        raise RuntimeError("callback failed")

    manager.add_cleanup_callback(explode)
    manager.add_cleanup_callback(lambda: calls.append("ran"))

    errors = manager.cleanup()

    assert len(errors) == 1
    assert "callback failed" in errors[0]
    assert calls == ["ran"]
    assert manager.active_interceptors() == []
    assert manager.get_groups() == []
    assert manager.get_conditional_interceptors() == []
    assert len(client.interceptors.request) == 0
    assert len(client.interceptors.response) == 0


@pytest.mark.asyncio
async def test_acleanup_awaits_coroutine_callbacks(make_client) -> None:
    manager = make_client().manager
    calls: list[str] = []

    async def flush() -> None:
        calls.append("flushed")

    manager.add_cleanup_callback(flush)

    assert await manager.acleanup() == []
    assert calls == ["flushed"]
    with pytest.raises(ValidationError):
        manager.add_cleanup_callback("nope")  # type: ignore[arg-type]
