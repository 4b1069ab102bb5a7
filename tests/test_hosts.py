import asyncio

import pytest

from multichat.conversation import ModelRef
from multichat.hosts import HostRegistry, HostStatus, UnknownHostError, normalize_base_url
from multichat.settings import SettingsManager

from conftest import LOCAL_URL, FakeClient


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("localhost:11434", "http://127.0.0.1:11434"),
        ("http://localhost:5173/", "http://127.0.0.1:11434"),
        ("http://127.0.0.1:3000", "http://127.0.0.1:11434"),
        ("HTTP://10.0.0.4:11434///", "http://10.0.0.4:11434"),
        ("https://ollama.example.com/", "https://ollama.example.com"),
        ("192.168.1.20:8080", "http://192.168.1.20:8080"),
        ("   ", ""),
    ],
)
def test_normalize_base_url(raw: str, expected: str) -> None:
    assert normalize_base_url(raw) == expected


def test_add_host_dedupes_by_normalized_url(registry: HostRegistry, settings: SettingsManager) -> None:
    first = registry.add_host("10.0.0.9:11434")
    second = registry.add_host("http://10.0.0.9:11434/")
    assert first == second
    assert first.id.startswith("host-")
    assert {"id": first.id, "url": "http://10.0.0.9:11434"} in settings.hosts()
    with pytest.raises(ValueError):
        registry.add_host("  ")


def test_connection_test_updates_status_and_catalog(registry: HostRegistry) -> None:
    status = asyncio.run(registry.test_connection("host-local"))
    assert status == HostStatus.CONNECTED
    assert [model.name for model in registry.models("host-local")] == ["llama3:8b", "mistral", "phi3"]
    options = registry.available_models()
    assert options[0]["host_id"] == "host-local"
    assert options[0]["host_url"] == LOCAL_URL


def test_unreachable_host_is_marked_failed(registry: HostRegistry) -> None:
    host = registry.add_host("http://10.9.9.9:11434")
    assert registry.status(host.id) == HostStatus.IDLE
    assert asyncio.run(registry.test_connection(host.id)) == HostStatus.FAILED
    assert registry.status(host.id) == HostStatus.FAILED
    assert registry.models(host.id) == []


def test_remove_host_forgets_status_and_models(registry: HostRegistry, settings: SettingsManager) -> None:
    asyncio.run(registry.refresh_all())
    registry.remove_host("host-local")
    assert registry.hosts() == []
    assert registry.models() == []
    assert settings.hosts() == []
    with pytest.raises(UnknownHostError):
        registry.resolve(ModelRef("host-local", "mistral"))


def test_pull_model_refreshes_catalog(registry: HostRegistry, client: FakeClient) -> None:
    asyncio.run(registry.pull_model("host-local", "qwen2:7b"))
    assert client.lifecycle == [("pull", LOCAL_URL, "qwen2:7b")]
    assert "qwen2:7b" in [model.name for model in registry.models("host-local")]
