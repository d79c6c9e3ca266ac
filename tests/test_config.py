from __future__ import annotations

from pathlib import Path

import pytest

from conftest import RecordingTransport
from hc_httpx.circuit_breaker import CircuitBreakerOptions
from hc_httpx.config import (
    ClientConfig,
    ConfigError,
    load_config,
    load_config_with_overrides,
    parse_config,
)
from hc_httpx.config.loader import CONFIG_PATH_ENV, get_default_config_path
from hc_httpx.config.models import build_policy_options
from hc_httpx.dedupe import DedupeOptions
from hc_httpx.policies import AuthOptions, CacheOptions, RetryOptions

BASE_YAML = """
base_url: https://api.example.com
timeout_ms: 2500
headers:
  X-App: billing
policies:
  auth:
    token: ${API_TOKEN:-dev-token}
  cache:
    max_size: "50"
    eviction: LRU
  retry:
    retries: 2
    delay_ms:
      strategy: linear
      initial_delay_ms: 100
groups:
  secure: [auth, retry]
  reads: auth, cache
enabled_groups: [secure]
dedupe: true
circuit_breaker:
  failure_threshold: 3
"""


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_coerces_sections(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("API_TOKEN", raising=False)

    config = load_config(_write(tmp_path, "client.yaml", BASE_YAML))

    assert config.base_url == "https://api.example.com"
    assert config.timeout_ms == 2500.0
    assert config.headers == {"X-App": "billing"}
    assert config.policies["auth"] == AuthOptions(token="dev-token")
    assert config.policies["cache"] == CacheOptions(max_size=50, eviction="lru")
    assert config.policies["retry"].retries == 2
    assert config.policies["retry"].delay_ms(3) == 300
    assert config.groups == {"secure": ["auth", "retry"], "reads": ["auth", "cache"]}
    assert config.enabled_groups == ["secure"]
    assert config.dedupe == DedupeOptions()
    assert config.circuit_breaker == CircuitBreakerOptions(failure_threshold=3)
    assert config.queue is None


def test_environment_values_are_expanded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("API_TOKEN", "from-env")

    config = load_config(_write(tmp_path, "client.yml", BASE_YAML))

    assert config.policies["auth"].token == "from-env"


def test_missing_environment_value_without_default_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HC_HTTPX_MISSING", raising=False)

    with pytest.raises(ConfigError, match="HC_HTTPX_MISSING"):
        parse_config("base_url: ${HC_HTTPX_MISSING}")


def test_nested_root_key_is_accepted() -> None:
    config = parse_config("hc_httpx:\n  client_id: billing\n  queue:\n    max_concurrent: 2\n")

    assert config.client_id == "billing"
    assert config.queue.max_concurrent == 2


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("unknown_key: 1", "Unknown config keys"),
        ("policies:\n  teleport: {}", "not a known policy"),
        ("policies:\n  cache:\n    eviction: random", "eviction"),
        ("policies:\n  cache:\n    no_such_field: 1", "policies.cache"),
        ("groups:\n  g: [auth]\nenabled_groups: [other]", "undefined groups"),
        ("log_format: xml", "log_format"),
        ("- just\n- a list", "mapping"),
    ],
)
def test_invalid_config_raises_config_error(content: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        parse_config(content)


def test_file_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Unsupported"):
        load_config(_write(tmp_path, "client.json", "{}"))
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.yaml")
    with pytest.raises(ConfigError, match="Failed to load"):
        load_config(_write(tmp_path, "broken.yaml", "a: [unclosed"))


def test_overrides_merge_nested_mappings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("API_TOKEN", raising=False)
    base = _write(tmp_path, "base.yaml", BASE_YAML)
    override = _write(tmp_path, "prod.yaml", "policies:\n  cache:\n    max_size: 500\nenabled_groups: [secure, reads]\n")

    config = load_config_with_overrides(base, override)

    assert config.policies["cache"] == CacheOptions(max_size=500, eviction="lru")
    assert config.policies["auth"].token == "dev-token"
    assert config.enabled_groups == ["secure", "reads"]


def test_default_path_prefers_environment_variable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, "custom.yaml", "client_id: env")
    monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

    assert get_default_config_path() == path
    assert load_config(None).client_id == "env"


def test_build_policy_options_passes_callables_through() -> None:
    condition = lambda error: True  # noqa: E731

    options = build_policy_options("retry", {"retries": "4", "retry_condition": condition, "delay_ms": 50})

    assert options == RetryOptions(retries=4, delay_ms=50.0, retry_condition=condition)


def test_false_section_disables_it() -> None:
    config = ClientConfig.from_dict({"dedupe": False, "batch": {"batch_size": 3}})

    assert config.dedupe is None
    assert config.batch.batch_size == 3


@pytest.mark.asyncio
async def test_client_applies_config_defaults_groups_and_wrappers(make_client) -> None:
    transport = RecordingTransport()
    config = parse_config(BASE_YAML.replace("${API_TOKEN:-dev-token}", "yaml-token"))

    client = make_client(transport, config=config)
    await client.get("/users")

    assert client.manager.active_interceptors() == ["auth", "retry"]
    assert transport.calls[0].full_url() == "https://api.example.com/users"
    assert transport.calls[0].timeout == 2.5
    assert transport.sent_headers[0]["Authorization"] == "Bearer yaml-token"
    assert transport.sent_headers[0]["X-App"] == "billing"
    assert client.dedupe_stats() is not None
    assert client.circuit_breaker_status()["state"] == "closed"

    client.enable_group("reads")
    assert client.policy("cache").options.max_size == 50


def test_client_accepts_plain_mapping(make_client) -> None:
    client = make_client(config={"client_id": "mapped", "queue": {"max_concurrent": 3}})

    assert client.client_id == "mapped"
    assert client.queue.max_concurrent == 3
