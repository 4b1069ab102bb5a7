"""
Local network discovery of reachable Ollama hosts.

Candidate addresses are built from /24 prefixes and probed with a bounded pool
of workers, each probe carrying its own short timeout.
"""
from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, List, Optional, Sequence, Set

from .hosts import INFERENCE_PORT, normalize_base_url
from .llm import OllamaClient, OllamaError

logger = logging.getLogger("multichat.scanner")

DEFAULT_PREFIXES = ("10.0.0", "192.168.0", "192.168.1")
LOOPBACK_CANDIDATES = (f"http://127.0.0.1:{INFERENCE_PORT}", f"http://localhost:{INFERENCE_PORT}")
SCAN_CONCURRENCY = 24
PROBE_TIMEOUT = 0.9
INTERFACE_DISCOVERY_TIMEOUT = 1.5
NOT_FOUND_MESSAGE = (
    "No active Ollama API found on your network. Ensure Ollama is running and reachable."
)

IPV4_PATTERN = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")
# Addresses used only to pick the outbound interface; no packet is sent.
ROUTE_PROBE_TARGETS = ("10.255.255.255", "192.168.255.255", "8.8.8.8")


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FOUND = "found"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ScannedHost:
    url: str
    model_count: int

    def to_dict(self) -> dict:
        return {"url": self.url, "model_count": self.model_count}


@dataclass
class ScanResult:
    hosts: List[ScannedHost] = field(default_factory=list)
    prefixes: List[str] = field(default_factory=list)
    probed: int = 0

    @property
    def state(self) -> ScanState:
        return ScanState.FOUND if self.hosts else ScanState.NOT_FOUND

    @property
    def message(self) -> str:
        return "" if self.hosts else NOT_FOUND_MESSAGE

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "message": self.message,
            "hosts": [host.to_dict() for host in self.hosts],
            "prefixes": list(self.prefixes),
            "probed": self.probed,
        }


def _parse_ipv4(text: str) -> Optional[List[int]]:
    match = IPV4_PATTERN.search(text)
    if not match:
        return None
    parts = [int(part) for part in match.group(1).split(".")]
    if any(part > 255 for part in parts):
        return None
    return parts


def normalize_scan_range(raw: str) -> str:
    """``"192.168.1.42"`` or ``"http://10.0.62.99:11434"`` -> its /24 prefix."""
    parts = _parse_ipv4(raw.strip())
    if not parts:
        return ""
    return f"{parts[0]}.{parts[1]}.{parts[2]}"


def is_private_ipv4(address: str) -> bool:
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return any(
        ip in ipaddress.IPv4Network(network)
        for network in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
    )


def prefixes_from_addresses(addresses: Iterable[str]) -> List[str]:
    prefixes: List[str] = []
    for address in addresses:
        if not is_private_ipv4(address):
            continue
        prefix = address.rsplit(".", 1)[0]
        if prefix not in prefixes:
            prefixes.append(prefix)
    return prefixes


def local_interface_addresses() -> List[str]:
    """
    Best-effort list of this machine's IPv4 addresses.

    Connecting a UDP socket assigns a local address for the route without
    sending anything; the hostname lookup catches the remaining interfaces.
    """
    found: List[str] = []
    for target in ROUTE_PROBE_TARGETS:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.connect((target, 1))
                address = sock.getsockname()[0]
        except OSError:
            continue
        if address not in found:
            found.append(address)
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        infos = []
    for info in infos:
        address = str(info[4][0])
        if address not in found:
            found.append(address)
    return found


async def discover_local_prefixes(
    discover: Callable[[], List[str]] = local_interface_addresses,
    timeout: float = INTERFACE_DISCOVERY_TIMEOUT,
) -> List[str]:
    try:
        addresses = await asyncio.wait_for(asyncio.to_thread(discover), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("Local interface discovery gave up after %.1fs", timeout)
        return []
    except OSError as exc:
        logger.debug("Local interface discovery failed: %s", exc)
        return []
    return prefixes_from_addresses(addresses)


def build_scan_candidates(
    host_urls: Sequence[str],
    prefixes: Sequence[str],
    strict: bool = False,
) -> List[str]:
    """
    Candidate base URLs, in probing order.

    Strict mode probes the given prefixes only; otherwise loopback, the
    configured hosts and their /24 prefixes are added.
    """
    candidates: List[str] = [] if strict else list(LOOPBACK_CANDIDATES)
    subnets: List[str] = [prefix for prefix in prefixes if prefix]
    if not strict:
        for host_url in host_urls:
            normalized = normalize_base_url(host_url)
            if not normalized:
                continue
            candidates.append(normalized)
            parts = _parse_ipv4(normalized)
            if parts:
                subnets.append(f"{parts[0]}.{parts[1]}.{parts[2]}")
    for prefix in dict.fromkeys(subnets):
        candidates.extend(f"http://{prefix}.{index}:{INFERENCE_PORT}" for index in range(1, 255))
    return list(dict.fromkeys(candidates))


def _mark_started(started: "asyncio.Future[None]") -> None:
    if not started.done():
        started.set_result(None)


class NetworkScanner:
    """
    Probes candidate addresses for ``/api/tags`` with a bounded worker pool.

    Only one scan runs at a time; ``scan`` returns ``None`` while busy.
    """

    def __init__(
        self,
        client: OllamaClient,
        concurrency: int = SCAN_CONCURRENCY,
        probe_timeout: float = PROBE_TIMEOUT,
        discover: Callable[[], List[str]] = local_interface_addresses,
        discovery_timeout: float = INTERFACE_DISCOVERY_TIMEOUT,
    ) -> None:
        self.client = client
        self.concurrency = concurrency
        self.probe_timeout = probe_timeout
        self.discover = discover
        self.discovery_timeout = discovery_timeout
        self.state = ScanState.IDLE
        self.last_result: Optional[ScanResult] = None

    @property
    def scanning(self) -> bool:
        return self.state == ScanState.SCANNING

    async def candidate_prefixes(self, host_urls: Sequence[str], custom_prefix: str) -> List[str]:
        if custom_prefix:
            return [custom_prefix]
        prefixes: List[str] = []
        for host_url in host_urls:
            parts = _parse_ipv4(normalize_base_url(host_url))
            if parts:
                prefixes.append(f"{parts[0]}.{parts[1]}.{parts[2]}")
        prefixes.extend(DEFAULT_PREFIXES)
        prefixes.extend(await discover_local_prefixes(self.discover, self.discovery_timeout))
        return list(dict.fromkeys(prefixes))

    async def scan(
        self,
        host_urls: Sequence[str] = (),
        custom_range: Optional[str] = None,
    ) -> Optional[ScanResult]:
        if self.scanning:
            logger.info("Scan already running; ignoring request.")
            return None
        self.state = ScanState.SCANNING
        self.last_result = None
        try:
            custom_prefix = normalize_scan_range(custom_range) if custom_range else ""
            if custom_range and not custom_prefix:
                logger.warning("Ignoring unparseable scan range %r", custom_range)
            prefixes = await self.candidate_prefixes(host_urls, custom_prefix)
            candidates = build_scan_candidates(host_urls, prefixes, strict=bool(custom_prefix))
            logger.info(
                "Scanning %d candidates across %s", len(candidates), ", ".join(prefixes)
            )
            found = await self._probe_all(candidates)
        except BaseException:
            self.state = ScanState.IDLE
            raise
        unique = {host.url: host for host in found}
        result = ScanResult(
            hosts=sorted(unique.values(), key=lambda host: host.url),
            prefixes=prefixes,
            probed=len(candidates),
        )
        self.last_result = result
        self.state = result.state
        logger.info("Scan finished: %d hosts found", len(result.hosts))
        return result

    async def _probe_all(self, candidates: List[str]) -> List[ScannedHost]:
        found: List[ScannedHost] = []
        seen: Set[str] = set()
        cursor = 0
        loop = asyncio.get_running_loop()
        # Abandoned requests keep their thread until requests gives up, so the
        # pool has spare room beyond the number of active workers.
        executor = ThreadPoolExecutor(
            max_workers=max(1, self.concurrency) * 2, thread_name_prefix="multichat-scan"
        )

        async def check_host(url: str) -> Optional[ScannedHost]:
            started = loop.create_future()

            def run() -> int:
                loop.call_soon_threadsafe(_mark_started, started)
                return self._list_models(url)

            call = loop.run_in_executor(executor, run)
            # The timeout covers the request itself, not the wait for a free thread.
            await started
            try:
                count = await asyncio.wait_for(call, timeout=self.probe_timeout)
            except asyncio.TimeoutError:
                logger.debug("No answer from %s in time", url)
                return None
            except OllamaError:
                return None
            return ScannedHost(url=url, model_count=count)

        async def worker() -> None:
            nonlocal cursor
            while cursor < len(candidates):
                candidate = normalize_base_url(candidates[cursor])
                cursor += 1
                if not candidate or candidate in seen:
                    continue
                seen.add(candidate)
                hit = await check_host(candidate)
                if hit:
                    found.append(hit)

        try:
            await asyncio.gather(
                *(worker() for _ in range(min(self.concurrency, len(candidates))))
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return found

    def _list_models(self, url: str) -> int:
        return len(self.client.list_models(url, timeout=self.probe_timeout, isolated=True))
