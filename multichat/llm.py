from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import requests


logger = logging.getLogger("multichat.llm")

ChunkCallback = Callable[[str], None]


class OllamaError(RuntimeError):
    """Raised when an Ollama host returns an error or cannot be reached."""


@dataclass(frozen=True)
class ModelInfo:
    name: str
    size: Optional[int] = None
    modified_at: Optional[str] = None
    family: Optional[str] = None
    parameter_size: Optional[str] = None
    quantization_level: Optional[str] = None
    format: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ModelInfo":
        details = payload.get("details")
        if not isinstance(details, dict):
            details = {}
        size = payload.get("size")
        return cls(
            name=str(payload.get("name") or ""),
            size=size if isinstance(size, int) else None,
            modified_at=payload.get("modified_at"),
            family=details.get("family"),
            parameter_size=details.get("parameter_size"),
            quantization_level=details.get("quantization_level"),
            format=details.get("format"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "modified_at": self.modified_at,
            "details": {
                "family": self.family,
                "parameter_size": self.parameter_size,
                "quantization_level": self.quantization_level,
                "format": self.format,
            },
        }


class OllamaClient:
    """
    Minimal HTTP client for the Ollama REST API.

    One client talks to any number of hosts; every call takes the host base URL.
    Calls block, so async callers run them on a worker thread.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def list_models(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        isolated: bool = False,
    ) -> List[ModelInfo]:
        """
        ``isolated`` skips the shared session; scanner threads use it so they
        never touch the connection pool the chat calls rely on.
        """
        url = f"{base_url}/api/tags"
        getter = requests.get if isolated else self.session.get
        try:
            response = getter(url, timeout=timeout or self.timeout)
        except requests.RequestException as exc:
            raise OllamaError(f"Could not reach {base_url}: {exc}") from exc
        if response.status_code >= 400:
            raise OllamaError(
                f"Ollama returned {response.status_code} for {url}: {_error_detail(response)}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise OllamaError(f"Model listing from {base_url} is not JSON.") from exc
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            return []
        return [
            ModelInfo.from_payload(item)
            for item in models
            if isinstance(item, dict) and item.get("name")
        ]

    def chat(
        self,
        base_url: str,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        stream: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        timeout: Optional[float] = None,
    ) -> str:
        payload = {
            "model": model,
            "messages": messages,
            "stream": stream,
        }
        url = f"{base_url}/api/chat"
        try:
            response = self.session.post(
                url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(payload),
                timeout=timeout or self.timeout,
                stream=stream,
            )
        except requests.RequestException as exc:
            raise OllamaError(f"Could not reach {base_url}: {exc}") from exc

        try:
            if response.status_code >= 400:
                raise OllamaError(f"{_error_detail(response)} ({base_url})")
            if stream:
                try:
                    return read_chat_stream(response.iter_lines(), on_chunk, base_url)
                except requests.RequestException as exc:
                    raise OllamaError(f"Stream from {base_url} broke off: {exc}") from exc
            try:
                data = response.json()
            except ValueError:
                logger.warning("Non-JSON chat response from %s treated as empty.", base_url)
                return ""
            return extract_chat_content(data, base_url)
        finally:
            response.close()

    def pull_model(self, base_url: str, name: str) -> None:
        self._lifecycle("POST", f"{base_url}/api/pull", {"name": name, "stream": False}, base_url)

    def delete_model(self, base_url: str, name: str) -> None:
        self._lifecycle("DELETE", f"{base_url}/api/delete", {"name": name}, base_url)

    def _lifecycle(self, method: str, url: str, body: Dict[str, Any], base_url: str) -> None:
        try:
            response = self.session.request(
                method,
                url,
                headers={"Content-Type": "application/json"},
                data=json.dumps(body),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise OllamaError(f"Could not reach {base_url}: {exc}") from exc
        if response.status_code >= 400:
            raise OllamaError(f"{_error_detail(response)} ({base_url})")


def extract_chat_content(data: Any, base_url: str) -> str:
    """
    Pull the assistant text out of a non-streaming chat body.

    Unknown shapes yield an empty string; an explicit ``error`` field is always
    raised.
    """
    if not isinstance(data, dict):
        return ""
    if data.get("error"):
        raise OllamaError(f"{data['error']} ({base_url})")
    message = data.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        return content if isinstance(content, str) else ""
    # /api/generate style payloads
    response = data.get("response")
    return response if isinstance(response, str) else ""


def merge_stream_chunk(accumulated: str, chunk: str) -> str:
    # Some proxies resend the whole text so far instead of a delta; only a
    # strictly longer chunk can be such a resend.
    if accumulated and len(chunk) > len(accumulated) and chunk.startswith(accumulated):
        return chunk
    return accumulated + chunk


def read_chat_stream(
    lines: Iterable[Union[bytes, str]],
    on_chunk: Optional[ChunkCallback],
    base_url: str,
) -> str:
    """
    Accumulate newline-delimited JSON chunks into one string.

    Blank or malformed lines (including a trailing partial line) are skipped.
    ``on_chunk`` receives the accumulated text after every change.
    """
    accumulated = ""
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = raw.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream line from %s: %r", base_url, line[:120])
            continue
        if not isinstance(data, dict):
            continue
        if data.get("error"):
            raise OllamaError(f"{data['error']} ({base_url})")
        message = data.get("message")
        chunk = message.get("content") if isinstance(message, dict) else None
        if not isinstance(chunk, str) or not chunk:
            continue
        accumulated = merge_stream_chunk(accumulated, chunk)
        if on_chunk is not None:
            on_chunk(accumulated)
    return accumulated


def _error_detail(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:1000] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        detail = data.get("error") or data.get("message")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"
