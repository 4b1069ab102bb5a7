import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from multichat.llm import (
    OllamaClient,
    OllamaError,
    extract_chat_content,
    merge_stream_chunk,
    read_chat_stream,
)

BASE = "http://10.0.0.7:11434"


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        payload: Any = None,
        lines: Optional[List[bytes]] = None,
        text: str = "",
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self._lines = lines or []
        self.text = text
        self.closed = False

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def iter_lines(self):
        yield from self._lines

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        self.response = response
        self.error = error
        self.requests: List[Dict[str, Any]] = []

    def _answer(self, **kwargs: Any) -> FakeResponse:
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer(method="GET", url=url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer(method="POST", url=url, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        return self._answer(method=method, url=url, **kwargs)


def test_list_models_parses_details() -> None:
    payload = {
        "models": [
            {"name": "llama3:8b", "size": 42, "details": {"family": "llama", "parameter_size": "8B"}},
            {"name": ""},
            "junk",
        ]
    }
    session = FakeSession(FakeResponse(payload=payload))
    models = OllamaClient(session=session).list_models(BASE, timeout=0.5)
    assert [model.name for model in models] == ["llama3:8b"]
    assert models[0].family == "llama"
    assert models[0].to_dict()["details"]["parameter_size"] == "8B"
    assert session.requests[0]["url"] == f"{BASE}/api/tags"
    assert session.requests[0]["timeout"] == 0.5


def test_isolated_listing_bypasses_the_shared_session(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: List[Dict[str, Any]] = []

    def fake_get(url: str, **kwargs: Any) -> FakeResponse:
        calls.append({"url": url, **kwargs})
        return FakeResponse(payload={"models": [{"name": "phi3"}]})

    monkeypatch.setattr(requests, "get", fake_get)
    session = FakeSession(error=AssertionError("shared session used"))
    models = OllamaClient(session=session).list_models(BASE, timeout=0.9, isolated=True)
    assert [model.name for model in models] == ["phi3"]
    assert calls == [{"url": f"{BASE}/api/tags", "timeout": 0.9}]
    assert session.requests == []


def test_list_models_wraps_network_errors() -> None:
    session = FakeSession(error=requests.ConnectionError("refused"))
    with pytest.raises(OllamaError) as excinfo:
        OllamaClient(session=session).list_models(BASE)
    assert BASE in str(excinfo.value)


def test_chat_non_streaming_returns_content() -> None:
    session = FakeSession(FakeResponse(payload={"message": {"role": "assistant", "content": "hey"}}))
    reply = OllamaClient(session=session).chat(
        BASE, model="mistral", messages=[{"role": "user", "content": "hi"}]
    )
    assert reply == "hey"
    body = json.loads(session.requests[0]["data"])
    assert body == {"model": "mistral", "messages": [{"role": "user", "content": "hi"}], "stream": False}
    assert session.response.closed


def test_chat_error_status_includes_host() -> None:
    session = FakeSession(FakeResponse(status_code=404, payload={"error": "model 'x' not found"}))
    with pytest.raises(OllamaError) as excinfo:
        OllamaClient(session=session).chat(BASE, model="x", messages=[])
    assert str(excinfo.value) == f"model 'x' not found ({BASE})"


def test_chat_non_json_body_is_empty_reply() -> None:
    session = FakeSession(FakeResponse(payload=None, text="<html>"))
    assert OllamaClient(session=session).chat(BASE, model="x", messages=[]) == ""


def test_chat_streaming_reports_accumulated_text() -> None:
    lines = [
        b'{"message": {"content": "Hel"}}',
        b"",
        b'{"message": {"content": "lo"}}',
        b'{"done": true}',
        b'{"message": {"con',
    ]
    seen: List[str] = []
    session = FakeSession(FakeResponse(lines=lines))
    reply = OllamaClient(session=session).chat(
        BASE, model="x", messages=[], stream=True, on_chunk=seen.append
    )
    assert reply == "Hello"
    assert seen == ["Hel", "Hello"]
    assert session.requests[0]["stream"] is True


def test_stream_error_chunk_raises() -> None:
    with pytest.raises(OllamaError):
        read_chat_stream([b'{"message": {"content": "a"}}', b'{"error": "out of memory"}'], None, BASE)


def test_merge_stream_chunk_handles_cumulative_chunks() -> None:
    assert merge_stream_chunk("Hel", "Hello") == "Hello"
    assert merge_stream_chunk("Hel", "lo") == "Hello"
    assert merge_stream_chunk("", "Hi") == "Hi"


def _stream(*chunks: str) -> List[bytes]:
    return [json.dumps({"message": {"content": chunk}}).encode("utf-8") for chunk in chunks]


def test_repeated_token_deltas_accumulate() -> None:
    assert read_chat_stream(_stream("*", "*", "bold", "*", "*"), None, BASE) == "**bold**"
    assert read_chat_stream(_stream("#", "#", " Plan"), None, BASE) == "## Plan"
    assert read_chat_stream(_stream("\n", "\n", "x"), None, BASE) == "\n\nx"
    assert merge_stream_chunk("ab", "ab") == "abab"


def test_cumulative_stream_is_not_duplicated() -> None:
    seen: List[str] = []
    assert read_chat_stream(_stream("Hel", "Hello", "Hello there"), seen.append, BASE) == "Hello there"
    assert seen == ["Hel", "Hello", "Hello there"]


def test_extract_chat_content_shapes() -> None:
    assert extract_chat_content({"response": "generated"}, BASE) == "generated"
    assert extract_chat_content({"message": {"content": 3}}, BASE) == ""
    assert extract_chat_content(["not", "a", "dict"], BASE) == ""
    with pytest.raises(OllamaError):
        extract_chat_content({"error": "bad"}, BASE)


def test_pull_and_delete_use_lifecycle_endpoints() -> None:
    session = FakeSession(FakeResponse(payload={"status": "success"}))
    client = OllamaClient(session=session)
    client.pull_model(BASE, "phi3")
    client.delete_model(BASE, "phi3")
    assert [(item["method"], item["url"]) for item in session.requests] == [
        ("POST", f"{BASE}/api/pull"),
        ("DELETE", f"{BASE}/api/delete"),
    ]
    assert json.loads(session.requests[0]["data"]) == {"name": "phi3", "stream": False}
