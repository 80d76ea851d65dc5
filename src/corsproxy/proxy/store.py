"""Key-value cache client on top of redis.asyncio."""

from __future__ import annotations

from typing import Mapping, Optional

from redis.asyncio import Redis, from_url as redis_from_url
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff


def create_redis(url: str, command_timeout: float) -> Redis:
    """Build the shared Redis connection used for caching and rate limiting.

    Reconnects back off exponentially up to two seconds between attempts.
    """
    return redis_from_url(
        url,
        decode_responses=False,
        socket_timeout=command_timeout,
        socket_connect_timeout=command_timeout,
        retry=Retry(ExponentialBackoff(cap=2.0, base=0.05), retries=3),
        retry_on_timeout=True,
    )


class RedisStore:
    """Thin async wrapper exposing the operations the proxy needs."""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def get(self, key: str) -> Optional[str]:
        value = await self._redis.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def get_bytes(self, key: str) -> Optional[bytes]:
        value = await self._redis.get(key)
        if value is None:
            return None
        if isinstance(value, str):
            return value.encode("utf-8")
        return bytes(value)

    async def set_many(self, values: Mapping[str, bytes | str], ttl_seconds: int) -> None:
        """Write several keys with the same TTL in one MULTI/EXEC transaction."""
        pipe = self._redis.pipeline(transaction=True)
        for key, value in values.items():
            pipe.set(key, value, ex=ttl_seconds)
        await pipe.execute()

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def aclose(self) -> None:
        await self._redis.aclose()
