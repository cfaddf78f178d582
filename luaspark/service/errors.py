from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - payment_required (402)
    - client_closed_request (499)
    - server_error / upstream_error (500)
    - upstream_timeout (504)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class PaymentRequiredError(ServiceError):
    """Identity is authenticated but not entitled to generate (402)."""
    status_code = 402
    error_code = "payment_required"


class GenerationCancelled(ServiceError):
    """The caller went away while generation was in flight (499)."""
    status_code = 499
    error_code = "client_closed_request"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamError(ServerError):
    """Transport or parsing failure talking to the generation provider (500)."""
    error_code = "upstream_error"


class UpstreamFailed(UpstreamError):
    """The upstream job reached a terminal state other than success (500)."""

    def __init__(self, status: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"generation failed upstream with status '{status}'",
            detail={"upstream_status": status},
        )
        self.upstream_status = status


class UpstreamTimeout(ServiceError):
    """No terminal upstream state before the deadline (504)."""
    status_code = 504
    error_code = "upstream_timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "PaymentRequiredError",
    "GenerationCancelled",
    "ServerError",
    "UpstreamError",
    "UpstreamFailed",
    "UpstreamTimeout",
]
