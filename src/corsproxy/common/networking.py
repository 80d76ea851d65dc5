"""Outbound HTTP client construction and egress restrictions."""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from typing import Iterable

import httpx

MAX_REDIRECTS = 5


class EgressDenylist:
    """Block outbound requests to configured hosts or networks."""

    def __init__(self, entries: Iterable[str] | None = None) -> None:
        self._blocked_hosts: set[str] = set()
        self._blocked_networks: list[ipaddress._BaseNetwork] = []  # type: ignore[attr-defined]
        if not entries:
            return
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                self._blocked_hosts.add(entry.lower())
            else:
                self._blocked_networks.append(network)

    def __bool__(self) -> bool:
        return bool(self._blocked_hosts or self._blocked_networks)

    def is_blocked(self, host: str) -> bool:
        normalized = host.lower().strip("[]")
        if normalized in self._blocked_hosts:
            return True
        if not self._blocked_networks:
            return False
        try:
            addr = ipaddress.ip_address(normalized)
        except ValueError:
            try:
                resolved = socket.gethostbyname(normalized)
            except OSError:
                return False
            addr = ipaddress.ip_address(resolved)
        return any(addr in network for network in self._blocked_networks)

    async def ensure_allowed(self, url: httpx.URL) -> None:
        if not self:
            return
        host = url.host
        if not host:
            raise PermissionError("Outbound request missing hostname")
        # name resolution blocks, keep it off the event loop
        if await asyncio.to_thread(self.is_blocked, host):
            raise PermissionError(f"Outbound request to {host} blocked by egress denylist")


def create_upstream_client(
    *,
    timeout: float,
    denylist: EgressDenylist | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Provide the shared httpx.AsyncClient used for every upstream fetch.

    The denylist is checked on every request the client sends, which covers
    redirect hops as well as the initial request.
    """
    denylist = denylist or EgressDenylist()
    limits = httpx.Limits(max_connections=100, max_keepalive_connections=20)

    async def _on_request(request: httpx.Request) -> None:
        await denylist.ensure_allowed(request.url)

    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        limits=limits,
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        transport=transport,
        event_hooks={"request": [_on_request]},
    )
