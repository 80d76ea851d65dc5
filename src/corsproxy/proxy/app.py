"""FastAPI application serving the CORS image proxy."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

import httpx
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from redis.asyncio import Redis
import structlog

from ..common.client_ip import client_ip, is_internal_client
from ..common.networking import EgressDenylist, create_upstream_client
from ..common.observability import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
)
from ..common.ratelimit import RateLimiter, RateLimitResult
from ..common.settings import ProxySettings, load_settings
from .cache import ImageCache
from .errors import ProxyError
from .pipeline import ImageProxy
from .store import RedisStore, create_redis
from .upstream import UpstreamClient

SERVICE_NAME = "corsproxy"
LOGGER = structlog.get_logger("corsproxy.app")

# Paths the access log skips.
ACCESS_LOG_EXCLUDED_PATHS = frozenset({"/favicon.ico", "/health"})

CORS_ALLOW_METHODS = ["GET", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Content-Type"]
TOO_MANY_REQUESTS = "Too Many Requests"
CACHE_WRITE_GRACE_SECONDS = 2.0


class ProxyState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: ProxySettings,
        redis: Redis,
        http_client: httpx.AsyncClient,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.store = RedisStore(redis)
        self.rate_limiter = RateLimiter(redis)
        self.proxy = ImageProxy(
            cache=ImageCache(self.store, ttl_seconds=settings.cache_duration_seconds),
            upstream=UpstreamClient(http_client, timeout=settings.timeout_seconds),
            user_agent=settings.user_agent,
        )

    async def check_rate_limit(self, ip: str) -> RateLimitResult:
        return await self.rate_limiter.check_limit(
            ip,
            limit=self.settings.rate_limit_max,
            window_seconds=self.settings.rate_limit_window_seconds,
        )

    async def redis_connected(self) -> bool:
        try:
            return await self.store.ping()
        except Exception as exc:
            LOGGER.warning("health_ping_failed", error=str(exc))
            return False

    async def aclose(self) -> None:
        await self.proxy.drain(timeout=CACHE_WRITE_GRACE_SECONDS)
        await self.http_client.aclose()
        await self.store.aclose()


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def _rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "RateLimit-Limit": str(result.limit),
        "RateLimit-Remaining": str(result.remaining),
        "RateLimit-Reset": str(result.reset_seconds),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: ProxySettings = app.state.settings
    redis = create_redis(settings.redis_url, settings.redis_command_timeout_seconds)
    http_client = create_upstream_client(
        timeout=settings.timeout_seconds,
        denylist=EgressDenylist(settings.egress_denylist),
    )
    state = ProxyState(settings=settings, redis=redis, http_client=http_client)
    app.state.proxy_state = state
    LOGGER.info(
        "proxy_started",
        environment=settings.environment,
        port=settings.port,
        usage=f"http://{settings.host}:{settings.port}/https://example.com/image.png",
    )
    try:
        yield
    finally:
        LOGGER.info("proxy_shutting_down")
        await state.aclose()


def create_app(settings: Optional[ProxySettings] = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(SERVICE_NAME, settings.log_level)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings

    # Middleware added last runs first: access log, then CORS, then rate limiting.
    @app.middleware("http")
    async def enforce_rate_limit(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        ip = client_ip(request)
        if is_internal_client(ip):
            return await call_next(request)

        result = await get_state(request).check_rate_limit(ip)
        headers = _rate_limit_headers(result)
        if not result.allowed:
            headers["Retry-After"] = str(result.reset_seconds)
            return PlainTextResponse(
                TOO_MANY_REQUESTS,
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=["*"],
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.middleware("http")
    async def access_log(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        path = request.url.path
        if path in ACCESS_LOG_EXCLUDED_PATHS:
            return await call_next(request)

        bind_request_context(request_id=str(uuid4()), client_ip=client_ip(request))
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration = time.perf_counter() - start
                LOGGER.exception(
                    "http_request_error",
                    method=request.method,
                    path=path,
                    duration_ms=round(duration * 1000, 2),
                )
                raise

            duration = time.perf_counter() - start
            log_kwargs = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            }
            if response.status_code >= 500:
                LOGGER.error("http_request", **log_kwargs)
            elif duration >= 1.0:
                LOGGER.warning("http_request", **log_kwargs)
            else:
                LOGGER.info("http_request", **log_kwargs)
            return response
        finally:
            clear_request_context()

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.error("unhandled_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            {"error": "Internal server error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.get("/health")
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Report cache-store connectivity. Always 200; the body carries the verdict."""
        connected = await state.redis_connected()
        return {"redis": "connected" if connected else "disconnected"}

    @app.get("/{target_url:path}")
    async def proxy_image(
        target_url: str,
        request: Request,
        state: ProxyState = Depends(get_state),
    ) -> Response:
        return await state.proxy.handle(target_url, client_ip(request))

    instrument_fastapi_app(app)
    return app
