import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from multichat.hosts import HostRegistry  # noqa: E402
from multichat.llm import ModelInfo, OllamaError  # noqa: E402
from multichat.orchestrator import Orchestrator  # noqa: E402
from multichat.settings import SettingsManager  # noqa: E402
from multichat.storage import ChatStateStore, SessionStore  # noqa: E402

LOCAL_URL = "http://127.0.0.1:11434"


class FakeClient:
    """In-process stand-in for OllamaClient; replies are ``"<model> says hi"``."""

    def __init__(self, models: Optional[Dict[str, List[str]]] = None) -> None:
        self.models = models if models is not None else {LOCAL_URL: ["llama3:8b", "mistral", "phi3"]}
        self.failing: set = set()
        self.stream_parts: List[str] = []
        self.on_call: Optional[Callable[[int, str, List[Dict[str, Any]]], None]] = None
        self.calls: List[Dict[str, Any]] = []
        self.lifecycle: List[tuple] = []
        self._lock = threading.Lock()

    def list_models(
        self, base_url: str, timeout: Optional[float] = None, isolated: bool = False
    ) -> List[ModelInfo]:
        if base_url not in self.models:
            raise OllamaError(f"Could not reach {base_url}: connection refused")
        return [ModelInfo(name=name) for name in self.models[base_url]]

    def chat(
        self,
        base_url: str,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        stream: bool = False,
        on_chunk=None,
        timeout: Optional[float] = None,
    ) -> str:
        with self._lock:
            self.calls.append({"base_url": base_url, "model": model, "messages": messages, "stream": stream})
            count = len(self.calls)
        if self.on_call is not None:
            self.on_call(count, model, messages)
        if model in self.failing:
            raise OllamaError(f"model '{model}' not found ({base_url})")
        reply = f"{model} says hi"
        if stream and on_chunk is not None:
            accumulated = ""
            for part in self.stream_parts or [reply]:
                accumulated += part
                on_chunk(accumulated)
            return accumulated
        return reply

    def pull_model(self, base_url: str, name: str) -> None:
        self.lifecycle.append(("pull", base_url, name))
        self.models.setdefault(base_url, []).append(name)

    def delete_model(self, base_url: str, name: str) -> None:
        self.lifecycle.append(("delete", base_url, name))
        self.models[base_url] = [model for model in self.models.get(base_url, []) if model != name]


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def settings(tmp_path: Path) -> SettingsManager:
    manager = SettingsManager(tmp_path / "settings.json")
    manager.save({"autonomous": {"turn_delay_seconds": 0.0}})
    return manager


@pytest.fixture
def registry(settings: SettingsManager, client: FakeClient) -> HostRegistry:
    return HostRegistry(settings, client)


@pytest.fixture
def orchestrator(
    tmp_path: Path, settings: SettingsManager, registry: HostRegistry, client: FakeClient
) -> Orchestrator:
    sessions = SessionStore(ChatStateStore(tmp_path))
    return Orchestrator(settings, registry, sessions, client)
