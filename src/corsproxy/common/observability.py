"""Logging and tracing setup shared by the proxy service."""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars, unbind_contextvars


_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False

REQUEST_CONTEXT_KEYS = ("request_id", "client_ip")


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        normalized = level.strip().upper()
        # accept pino-style level names as well
        normalized = {"TRACE": "DEBUG", "FATAL": "CRITICAL", "WARN": "WARNING"}.get(normalized, normalized)
        numeric = logging.getLevelName(normalized)
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    """Configure structlog for JSON structured logging."""

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def bind_request_context(request_id: str, client_ip: str) -> None:
    """Attach per-request identifiers to every log line emitted while handling it."""

    bind_contextvars(request_id=request_id, client_ip=client_ip)


def clear_request_context() -> None:
    unbind_contextvars(*REQUEST_CONTEXT_KEYS)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse `CORSPROXY_OTEL_EXPORTER_HEADERS` (`k=v,k2=v2`); malformed pairs are skipped."""
    pairs = (item.partition("=") for item in (headers or "").split(","))
    return {key.strip(): value.strip() for key, _, value in pairs if key.strip() and value.strip()}


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Configure OpenTelemetry tracing and instrument outbound httpx calls."""

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured:
        return

    current_provider = trace.get_tracer_provider()
    if not isinstance(current_provider, TracerProvider):
        resource = Resource.create({"service.name": service_name})
        sampler_ratio = max(0.0, min(1.0, sampler_ratio))
        provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(sampler_ratio))

        # no endpoint: spans are sampled and recorded but never exported
        if endpoint:
            exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
            provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
    _tracer_configured = True

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def instrument_fastapi_app(app) -> None:
    """Attach OpenTelemetry instrumentation to a FastAPI app."""

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls="health,favicon.ico",
    )
