"""Client-visible proxy failures.

Every error carries the HTTP status and the message returned to the caller as
``{"error": <message>}``. Internal details stay in the exception chain and the
logs.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status


class ProxyError(HTTPException):
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(
            status_code=status_code or self.default_status,
            detail=message or self.default_message,
        )

    @property
    def message(self) -> str:
        return str(self.detail)


class MissingTargetError(ProxyError):
    default_status = status.HTTP_400_BAD_REQUEST
    default_message = "No URL provided"


class InvalidTargetError(ProxyError):
    default_status = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid URL provided"


class EgressDeniedError(ProxyError):
    default_status = status.HTTP_403_FORBIDDEN
    default_message = "Target host not allowed"


class UpstreamError(ProxyError):
    """Base class for failures of the outbound fetch."""


class UpstreamTimeout(UpstreamError):
    default_status = status.HTTP_504_GATEWAY_TIMEOUT
    default_message = "Request timeout"


class UpstreamHTTPError(UpstreamError):
    def __init__(self, upstream_status: int, reason: str) -> None:
        super().__init__(message=f"Upstream error: {reason}", status_code=upstream_status)
        self.upstream_status = upstream_status
        self.reason = reason


class UpstreamNetworkError(UpstreamError):
    pass
