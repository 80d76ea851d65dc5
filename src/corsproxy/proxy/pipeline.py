"""Request pipeline: target parsing, cache lookup, upstream fetch, cache population."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from fastapi import Response, status
from opentelemetry import trace

from .cache import CachedImage, ImageCache
from .errors import InvalidTargetError, MissingTargetError, ProxyError
from .upstream import UpstreamClient, UpstreamResponse, build_outbound_headers

LOGGER = structlog.get_logger("corsproxy.pipeline")
TRACER = trace.get_tracer("corsproxy.pipeline")

# http(s) scheme plus however many slashes or backslashes follow it
_SPECIAL_SCHEME = re.compile(r"(?i)^(https?):[/\\]*")


def normalize_target(target: str) -> str:
    """Restore the authority slashes of an http(s) target, as browsers do."""
    return _SPECIAL_SCHEME.sub(lambda m: f"{m.group(1).lower()}://", target, count=1)


def parse_target(target: str) -> httpx.URL:
    if not target:
        raise MissingTargetError()
    try:
        url = httpx.URL(normalize_target(target))
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise InvalidTargetError() from exc
    if not url.is_absolute_url:
        raise InvalidTargetError()
    return url


@dataclass
class ProxyRequest:
    """Everything the pipeline knows about one proxied request."""

    target: str
    url: httpx.URL
    client_ip: str
    outbound_headers: dict[str, str] = field(default_factory=dict)


class ImageProxy:
    """Orchestrates a single proxied GET.

    The steps run in a fixed order: parse the target, serve from cache when
    both cache keys are readable, otherwise fetch upstream once, schedule the
    cache write for cacheable images and answer with the fetched body. Cache
    writes run as background tasks so the response never waits for Redis.
    """

    def __init__(self, cache: ImageCache, upstream: UpstreamClient, user_agent: str) -> None:
        self._cache = cache
        self._upstream = upstream
        self._user_agent = user_agent
        self._pending_writes: set[asyncio.Task] = set()

    def prepare(self, target: str, client_ip: str) -> ProxyRequest:
        url = parse_target(target)
        return ProxyRequest(
            target=target,
            url=url,
            client_ip=client_ip,
            outbound_headers=build_outbound_headers(url, client_ip, self._user_agent),
        )

    async def handle(self, target: str, client_ip: str) -> Response:
        request = self.prepare(target, client_ip)

        cached = await self._lookup(request)
        if cached is not None:
            LOGGER.info("cache_hit", target=request.target, bytes=len(cached.body))
            return Response(content=cached.body, status_code=status.HTTP_200_OK, headers=cached.headers)

        try:
            upstream = await self._upstream.fetch(request.url, request.outbound_headers)
        except ProxyError as exc:
            cause: Optional[BaseException] = exc.__cause__
            LOGGER.error(
                "upstream_error",
                target=request.target,
                status=exc.status_code,
                error=str(cause) if cause is not None else exc.message,
            )
            raise

        headers = upstream.forwarded_headers()
        if upstream.is_cacheable:
            self._schedule_cache_write(request, upstream, headers)

        LOGGER.info(
            "proxied",
            target=request.target,
            upstream_status=upstream.status_code,
            content_type=upstream.content_type,
            bytes=len(upstream.body),
            cached=upstream.is_cacheable,
        )
        return Response(content=upstream.body, status_code=status.HTTP_200_OK, headers=headers)

    async def _lookup(self, request: ProxyRequest) -> Optional[CachedImage]:
        with TRACER.start_as_current_span("proxy.cache_lookup") as span:
            cached = await self._cache.lookup(request.target)
            span.set_attribute("corsproxy.cache_hit", cached is not None)
            return cached

    def _schedule_cache_write(
        self,
        request: ProxyRequest,
        upstream: UpstreamResponse,
        headers: dict[str, str],
    ) -> None:
        task = asyncio.create_task(self._cache.populate(request.target, upstream.body, headers))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    async def drain(self, timeout: float = 2.0) -> None:
        """Wait up to ``timeout`` seconds for scheduled cache writes to finish."""
        if not self._pending_writes:
            return
        _, pending = await asyncio.wait(set(self._pending_writes), timeout=timeout)
        if pending:
            LOGGER.warning("cache_writes_abandoned", count=len(pending))
