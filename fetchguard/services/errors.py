"""
Service layer exceptions.

Upstream failures keep the attributes the retry engine classifies on
(HTTP status, API error code, Retry-After hint). CircuitOpenError is the
only error produced locally by the resilience layer itself.
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class UpstreamError(ServiceError):
    """The upstream API rejected or failed a request."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        retry_after: float | None = None,
        headers: dict[str, str] | None = None,
        service_id: str | None = None,
    ):
        self.status = status
        self.code = code
        self.retry_after = retry_after
        self.headers = headers or {}
        super().__init__(message, service_id=service_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "status": self.status,
            "code": self.code,
            "retry_after": self.retry_after,
            "service_id": self.service_id,
        }


class NetworkError(UpstreamError):
    """Request never produced an HTTP response (reset, DNS failure, ...)."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        service_id: str | None = None,
    ):
        super().__init__(message, status=None, code=code, service_id=service_id)


class RequestTimeoutError(NetworkError):
    """Request timed out."""

    def __init__(self, service_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to service '{service_id}' timed out after {timeout}s",
            code="ETIMEDOUT",
            service_id=service_id,
        )


class RateLimitError(UpstreamError):
    """Rate limit exceeded."""

    def __init__(
        self,
        service_id: str,
        retry_after: float | None = None,
        code: str | None = "rate_limited",
    ):
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(
            msg,
            status=429,
            code=code,
            retry_after=retry_after,
            service_id=service_id,
        )


class CircuitOpenError(ServiceError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )
