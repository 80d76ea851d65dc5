from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


BASE_ENV = {
    "CORSPROXY_ENV": "test",
    "CORSPROXY_LOG_LEVEL": "info",
    "CORSPROXY_PORT": "3000",
    "CORSPROXY_REDIS_URL": "redis://test:6379/0",
    "CORSPROXY_CACHE_DURATION": "86400",
    "CORSPROXY_TIMEOUT": "5000",
    "CORSPROXY_RATE_LIMIT_WINDOW": "60",
    "CORSPROXY_RATE_LIMIT_MAX": "100",
    "CORSPROXY_USER_AGENT": "corsproxy-test/1.0",
}


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple, dict]] = []

    def set(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("set", args, kwargs))
        return self

    def incr(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("incr", args, kwargs))
        return self

    def ttl(self, *args, **kwargs) -> "FakePipeline":
        self._commands.append(("ttl", args, kwargs))
        return self

    async def execute(self) -> list[Any]:
        self._redis.check_available()
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis with decode_responses=False."""

    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}
        self.available = True
        self.closed = False
        self.set_calls = 0

    def check_available(self) -> None:
        if not self.available:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key: str) -> bytes | None:
        self.check_available()
        return self.values.get(key)

    async def set(self, key: str, value: bytes | str, ex: int | None = None) -> bool:
        self.check_available()
        self.set_calls += 1
        self.values[key] = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self.check_available()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def incr(self, key: str) -> int:
        self.check_available()
        current = int(self.values.get(key, b"0")) + 1
        self.values[key] = str(current).encode("utf-8")
        return current

    async def ttl(self, key: str) -> int:
        self.check_available()
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    async def expire(self, key: str, seconds: int) -> bool:
        self.check_available()
        if key not in self.values:
            return False
        self.ttls[key] = seconds
        return True

    async def ping(self) -> bool:
        self.check_available()
        return True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def proxy_env(monkeypatch) -> Callable[..., None]:
    """Populate the CORSPROXY_* environment, applying per-test overrides."""

    def _apply(**overrides: str) -> None:
        env = dict(BASE_ENV)
        env.update(overrides)
        for key, value in env.items():
            monkeypatch.setenv(key, value)

    _apply()
    return _apply


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class UpstreamRecorder:
    """MockTransport handler that records requests and replays a configurable response."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200,
            content=b"\x89PNG-image-bytes",
            headers={
                "Content-Type": "image/png",
                "Cache-Control": "public, max-age=3600",
                "ETag": '"abc123"',
                "Set-Cookie": "session=secret",
            },
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()
