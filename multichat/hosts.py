from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import re
from typing import Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4

from .conversation import ModelRef
from .llm import ModelInfo, OllamaClient, OllamaError
from .settings import SettingsManager

INFERENCE_PORT = 11434
LOOPBACK = "127.0.0.1"
DEV_SERVER_PORTS = {3000, 5173}

logger = logging.getLogger("multichat.hosts")


class HostStatus(str, Enum):
    IDLE = "idle"
    TESTING = "testing"
    CONNECTED = "connected"
    FAILED = "failed"


class UnknownHostError(KeyError):
    """Raised when a model reference points at a host that is not configured."""


@dataclass(frozen=True)
class Host:
    id: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "url": self.url}


def normalize_base_url(raw: str) -> str:
    """
    Canonical form of a host URL.

    ``localhost`` becomes the loopback literal, dev-server ports on loopback are
    pointed at the Ollama port, the scheme defaults to http and trailing
    slashes are dropped.
    """
    trimmed = raw.strip()
    if not trimmed:
        return ""
    with_scheme = trimmed if re.match(r"^https?://", trimmed, re.IGNORECASE) else f"http://{trimmed}"
    try:
        parts = urlsplit(with_scheme)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return with_scheme.rstrip("/")
    if not hostname:
        return with_scheme.rstrip("/")
    if hostname == "localhost":
        hostname = LOOPBACK
    if hostname == LOOPBACK and port in DEV_SERVER_PORTS:
        port = INFERENCE_PORT
    netloc = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parts.username:
        credentials = parts.username + (f":{parts.password}" if parts.password else "")
        netloc = f"{credentials}@{netloc}"
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), netloc, path, parts.query, parts.fragment)).rstrip("/")


class HostRegistry:
    """
    Configured inference hosts, their connection status and model catalog.

    Host entries are persisted through the settings file; statuses and the
    catalog only live in memory.
    """

    def __init__(self, settings: SettingsManager, client: OllamaClient) -> None:
        self.settings = settings
        self.client = client
        self._hosts: Dict[str, Host] = {}
        for entry in settings.hosts():
            url = normalize_base_url(entry["url"])
            if url:
                self._hosts[entry["id"]] = Host(id=entry["id"], url=url)
        self._statuses: Dict[str, HostStatus] = {host_id: HostStatus.IDLE for host_id in self._hosts}
        self._catalog: Dict[str, List[ModelInfo]] = {}

    def hosts(self) -> List[Host]:
        return list(self._hosts.values())

    def get(self, host_id: str) -> Host:
        try:
            return self._hosts[host_id]
        except KeyError:
            raise UnknownHostError(host_id) from None

    def find_by_url(self, url: str) -> Optional[Host]:
        normalized = normalize_base_url(url)
        return next((host for host in self._hosts.values() if host.url == normalized), None)

    def status(self, host_id: str) -> HostStatus:
        return self._statuses.get(host_id, HostStatus.IDLE)

    def statuses(self) -> Dict[str, HostStatus]:
        return dict(self._statuses)

    def add_host(self, url: str, host_id: Optional[str] = None) -> Host:
        normalized = normalize_base_url(url)
        if not normalized:
            raise ValueError("Host URL must not be empty.")
        existing = self.find_by_url(normalized)
        if existing:
            return existing
        host = Host(id=host_id or f"host-{uuid4().hex[:8]}", url=normalized)
        self._hosts = {**self._hosts, host.id: host}
        self._set_status(host.id, HostStatus.IDLE)
        self._save()
        logger.info("Added host %s (%s)", host.id, host.url)
        return host

    def remove_host(self, host_id: str) -> Host:
        host = self.get(host_id)
        self._hosts = {key: value for key, value in self._hosts.items() if key != host_id}
        self._statuses = {key: value for key, value in self._statuses.items() if key != host_id}
        self._catalog = {key: value for key, value in self._catalog.items() if key != host_id}
        self._save()
        logger.info("Removed host %s (%s)", host.id, host.url)
        return host

    def resolve(self, ref: ModelRef) -> str:
        return self.get(ref.host_id).url

    def mark_failed(self, host_id: str) -> None:
        if host_id in self._hosts:
            self._set_status(host_id, HostStatus.FAILED)

    def models(self, host_id: Optional[str] = None) -> List[ModelInfo]:
        if host_id is not None:
            return list(self._catalog.get(host_id, []))
        return [model for models in self._catalog.values() for model in models]

    def available_models(self) -> List[Dict[str, object]]:
        options: List[Dict[str, object]] = []
        for host in self._hosts.values():
            for model in self._catalog.get(host.id, []):
                entry: Dict[str, object] = {"host_id": host.id, "host_url": host.url}
                entry.update(model.to_dict())
                options.append(entry)
        return options

    async def test_connection(self, host_id: str) -> HostStatus:
        host = self.get(host_id)
        self._set_status(host_id, HostStatus.TESTING)
        try:
            models = await asyncio.to_thread(self.client.list_models, host.url)
        except OllamaError as exc:
            logger.warning("Connection test for %s failed: %s", host.url, exc)
            if host_id in self._hosts:
                self._set_status(host_id, HostStatus.FAILED)
            return HostStatus.FAILED
        if host_id not in self._hosts:
            # Removed while the probe was in flight.
            return HostStatus.IDLE
        self._catalog = {**self._catalog, host_id: models}
        self._set_status(host_id, HostStatus.CONNECTED)
        logger.info("Host %s connected with %d models", host.url, len(models))
        return HostStatus.CONNECTED

    async def refresh_all(self) -> Dict[str, HostStatus]:
        host_ids = list(self._hosts)
        results = await asyncio.gather(*(self.test_connection(host_id) for host_id in host_ids))
        return dict(zip(host_ids, results))

    async def pull_model(self, host_id: str, name: str) -> HostStatus:
        host = self.get(host_id)
        logger.info("Pulling %s on %s", name, host.url)
        await asyncio.to_thread(self.client.pull_model, host.url, name)
        return await self.test_connection(host_id)

    async def delete_model(self, host_id: str, name: str) -> HostStatus:
        host = self.get(host_id)
        logger.info("Deleting %s on %s", name, host.url)
        await asyncio.to_thread(self.client.delete_model, host.url, name)
        return await self.test_connection(host_id)

    def _set_status(self, host_id: str, status: HostStatus) -> None:
        self._statuses = {**self._statuses, host_id: status}

    def _save(self) -> None:
        self.settings.set_hosts([host.to_dict() for host in self._hosts.values()])
