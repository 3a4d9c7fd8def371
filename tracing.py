from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx


logger = logging.getLogger(__name__)


@dataclass
class NetworkTimings:
    dns_time_s: float = 0.0
    connect_time_s: float = 0.0
    tls_time_s: float = 0.0
    target_ip: str = ""


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def strip_port(address: str) -> str:
    """Return the host part of ``host:port`` / ``[v6]:port``, or the input unchanged."""
    if address.startswith("["):
        end = address.find("]")
        if end != -1:
            return address[1:end]
        return address
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


class NetworkTracer:
    """Captures DNS, TCP connect and TLS handshake durations for one request.

    Name resolution is done here rather than inside the connection pool so it
    can be timed on its own: ``resolve`` looks the host up and rewrites the URL
    to the chosen address, while ``extensions`` keeps the original host for the
    TLS server name. Connect and handshake phases are timed through the httpx
    ``trace`` request extension. Every field is filled as far as the request
    got, so a TLS failure still reports DNS and connect time.

    A tracer is single-use; create a new one per request.
    """

    def __init__(self) -> None:
        self.timings = NetworkTimings()
        self._host: Optional[str] = None
        self._resolved_ip: str = ""
        self._connect_started: Optional[float] = None
        self._tls_started: Optional[float] = None

    async def resolve(self, url: httpx.URL) -> httpx.URL:
        host = url.host
        self._host = host
        if not host or _is_ip_literal(host):
            self._resolved_ip = host
            return url

        port = url.port or (443 if url.scheme == "https" else 80)
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        try:
            infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        finally:
            self.timings.dns_time_s = time.perf_counter() - started
        if not infos:
            raise socket.gaierror(f"no addresses found for {host}")

        address = str(infos[0][4][0])
        self._resolved_ip = address
        logger.debug("Resolved %s to %s in %.4fs", host, address, self.timings.dns_time_s)
        if ":" in address:
            return url.copy_with(host=f"[{address}]")
        return url.copy_with(host=address)

    def host_header(self, url: httpx.URL) -> str:
        """Host header value for the original (pre-resolution) URL."""
        return url.netloc.decode("ascii")

    def extensions(self) -> dict[str, Any]:
        extensions: dict[str, Any] = {"trace": self._trace}
        if self._host and not _is_ip_literal(self._host):
            extensions["sni_hostname"] = self._host
        return extensions

    async def _trace(self, event_name: str, info: dict[str, Any]) -> None:
        now = time.perf_counter()
        if event_name == "connection.connect_tcp.started":
            self._connect_started = now
        elif event_name in ("connection.connect_tcp.complete", "connection.connect_tcp.failed"):
            if self._connect_started is not None:
                self.timings.connect_time_s = now - self._connect_started
            if event_name.endswith("complete"):
                self.timings.target_ip = self._peer_ip(info.get("return_value"))
        elif event_name == "connection.start_tls.started":
            self._tls_started = now
        elif event_name in ("connection.start_tls.complete", "connection.start_tls.failed"):
            if self._tls_started is not None:
                self.timings.tls_time_s = now - self._tls_started

    def _peer_ip(self, stream: Any) -> str:
        if stream is not None:
            try:
                server_addr = stream.get_extra_info("server_addr")
            except Exception:  # noqa: BLE001
                server_addr = None
            if isinstance(server_addr, tuple) and server_addr:
                return str(server_addr[0])
            if isinstance(server_addr, str):
                return strip_port(server_addr)
        return self._resolved_ip
