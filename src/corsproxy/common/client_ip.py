"""Client identifier resolution for incoming requests."""

from __future__ import annotations

from typing import Mapping, Optional

from fastapi import Request

TRUSTED_PROXY_HEADER = "cf-connecting-ip"
FORWARDED_FOR_HEADER = "x-forwarded-for"

# Docker bridge networks hand out 172.x addresses; such callers are internal.
INTERNAL_PREFIX = "172."


def resolve_client_ip(headers: Mapping[str, str], peer: object = None) -> str:
    """
    Resolve the caller's address from request metadata.

    Order: trusted proxy header, first X-Forwarded-For entry, transport peer
    address, empty string. Never raises.
    """
    trusted = headers.get(TRUSTED_PROXY_HEADER)
    if trusted:
        trusted = trusted.strip()
        if trusted:
            return trusted

    forwarded = headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        return forwarded.split(",")[0].strip()

    if peer and isinstance(peer, str):
        return peer

    return ""


def client_ip(request: Request) -> str:
    peer: Optional[str] = request.client.host if request.client else None
    return resolve_client_ip(request.headers, peer)


def is_internal_client(ip: str) -> bool:
    return ip.startswith(INTERNAL_PREFIX)
