"""Outbound fetch of target URLs and classification of the outcome."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import httpx
from opentelemetry import trace

from .errors import EgressDeniedError, UpstreamHTTPError, UpstreamNetworkError, UpstreamTimeout

TRACER = trace.get_tracer("corsproxy.upstream")

ACCEPT = "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8"
ACCEPT_LANGUAGE = "en-US,en;q=0.9"
ACCEPT_ENCODING = "gzip, deflate, br"

# Response headers forwarded to the caller and stored with cached entries.
FORWARDED_HEADERS = ("Content-Type", "Cache-Control", "ETag")


def is_image_content_type(content_type: str | None) -> bool:
    return bool(content_type) and content_type.startswith("image/")


def build_outbound_headers(url: httpx.URL, client_ip: str, user_agent: str) -> dict[str, str]:
    """Headers sent upstream, shaped like a browser loading the image from its own site."""
    host = url.netloc.decode("ascii")
    origin = f"{url.scheme}://{host}"
    return {
        "User-Agent": user_agent,
        "Origin": origin,
        "Referer": f"{origin}/",
        "X-Forwarded-For": client_ip,
        "X-Forwarded-Host": host,
        "X-Forwarded-Proto": url.scheme,
        "Accept": ACCEPT,
        "Accept-Language": ACCEPT_LANGUAGE,
        "Accept-Encoding": ACCEPT_ENCODING,
    }


@dataclass
class UpstreamResponse:
    status_code: int
    headers: httpx.Headers
    body: bytes

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def is_cacheable(self) -> bool:
        return is_image_content_type(self.content_type) and len(self.body) > 0

    def forwarded_headers(self) -> dict[str, str]:
        forwarded: dict[str, str] = {}
        for name in FORWARDED_HEADERS:
            value = self.headers.get(name)
            if value:
                forwarded[name] = value
        return forwarded


class UpstreamClient:
    """Performs the single outbound GET for a proxied request."""

    def __init__(self, http_client: httpx.AsyncClient, timeout: float):
        self._http = http_client
        self._timeout = timeout

    async def fetch(self, url: httpx.URL, headers: Mapping[str, str]) -> UpstreamResponse:
        """
        Fetch ``url`` once, following up to five redirects.

        Raises:
            UpstreamTimeout: the request exceeded the configured timeout
            UpstreamHTTPError: the upstream answered with status >= 400
            EgressDeniedError: the target (or a redirect hop) is denylisted
            UpstreamNetworkError: any other failure (DNS, TLS, connection, redirects)
        """
        with TRACER.start_as_current_span("proxy.fetch", attributes={"url.full": str(url)}) as span:
            try:
                response = await self._http.get(url, headers=dict(headers), timeout=self._timeout)
            except httpx.TimeoutException as exc:
                raise UpstreamTimeout() from exc
            except PermissionError as exc:
                raise EgressDeniedError() from exc
            except Exception as exc:  # noqa: BLE001
                raise UpstreamNetworkError() from exc

            span.set_attribute("http.response.status_code", response.status_code)
            if response.status_code >= 400:
                raise UpstreamHTTPError(response.status_code, response.reason_phrase)

            return UpstreamResponse(
                status_code=response.status_code,
                headers=response.headers,
                body=response.content,
            )
