"""Image response cache stored as a payload key plus a header-map key."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Mapping, Optional

import structlog

from .store import RedisStore

LOGGER = structlog.get_logger("corsproxy.cache")

CACHE_KEY_PREFIX = "image:"
HEADERS_KEY_SUFFIX = ":headers"


def cache_key(target_url: str) -> str:
    return f"{CACHE_KEY_PREFIX}{target_url}"


def headers_key(target_url: str) -> str:
    return f"{cache_key(target_url)}{HEADERS_KEY_SUFFIX}"


@dataclass(frozen=True)
class CachedImage:
    body: bytes
    headers: dict[str, str]


class ImageCache:
    """Reads and writes cached image responses.

    An entry is only served when both the payload and its header map are
    present and readable. Store failures never propagate: reads degrade to a
    miss and writes are logged and dropped.
    """

    def __init__(self, store: RedisStore, ttl_seconds: int) -> None:
        self._store = store
        self._ttl = ttl_seconds

    async def lookup(self, target_url: str) -> Optional[CachedImage]:
        key = cache_key(target_url)
        try:
            body = await self._store.get_bytes(key)
        except Exception as exc:
            LOGGER.warning("cache_read_failed", cache_key=key, error=str(exc))
            return None
        if not body:
            return None

        try:
            raw_headers = await self._store.get(headers_key(target_url))
            headers = json.loads(raw_headers) if raw_headers is not None else None
        except Exception as exc:
            LOGGER.warning("cache_headers_unreadable", cache_key=key, error=str(exc))
            return None
        if not isinstance(headers, dict):
            return None

        return CachedImage(body=body, headers={str(k): str(v) for k, v in headers.items()})

    async def populate(self, target_url: str, body: bytes, headers: Mapping[str, str]) -> bool:
        """Store a payload and its headers together. Returns False when the write failed."""
        key = cache_key(target_url)
        try:
            await self._store.set_many(
                {
                    key: body,
                    headers_key(target_url): json.dumps(dict(headers)),
                },
                self._ttl,
            )
        except Exception as exc:
            LOGGER.error("cache_write_failed", cache_key=key, error=str(exc))
            return False
        LOGGER.debug("cache_write", cache_key=key, bytes=len(body), ttl=self._ttl)
        return True
