"""Distributed fixed-window rate limiting backed by Redis."""

from __future__ import annotations

from dataclasses import dataclass

from redis.asyncio import Redis
import structlog

LOGGER = structlog.get_logger("corsproxy.ratelimit")

KEY_PREFIX = "rl-ip-"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    reset_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


class RateLimiter:
    """Redis-backed limiter counting requests per key over a fixed window."""

    def __init__(self, redis: Redis, prefix: str = KEY_PREFIX):
        self._redis = redis
        self._prefix = prefix

    def key_for(self, identifier: str) -> str:
        return f"{self._prefix}{identifier}"

    async def check_limit(
        self,
        identifier: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """
        Count one request for ``identifier`` and decide whether it is admitted.

        The counter is incremented with INCR so concurrent instances never lose
        updates. The window starts with the first request and the key expires
        when it ends.

        Args:
            identifier: Client identifier, e.g. "203.0.113.7" (may be empty)
            limit: Maximum requests allowed in the window
            window_seconds: Window width in seconds

        Returns:
            RateLimitResult describing the decision and the window state
        """
        rate_key = self.key_for(identifier)

        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(rate_key)
            pipe.ttl(rate_key)
            current, ttl = await pipe.execute()
            current = int(current)
            ttl = int(ttl)

            # New window, or a key left without expiry by an interrupted writer
            if ttl < 0:
                await self._redis.expire(rate_key, window_seconds)
                ttl = window_seconds

            allowed = current <= limit

            if not allowed:
                LOGGER.warning(
                    "rate_limit_exceeded",
                    key=rate_key,
                    current=current,
                    limit=limit,
                    window=window_seconds,
                )

            return RateLimitResult(allowed=allowed, current=current, limit=limit, reset_seconds=ttl)

        except Exception as exc:
            # Fail open on Redis errors to avoid cascading failures
            LOGGER.error("rate_limiter_error", key=rate_key, error=str(exc))
            return RateLimitResult(allowed=True, current=0, limit=limit, reset_seconds=window_seconds)
