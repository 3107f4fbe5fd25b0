from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope. Credential and token failures
    are always 4xx; only genuine server faults map to 5xx.
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


class MissingApiKeyError(AuthenticationError):
    """No API key was presented on a tenant-scoped endpoint."""
    error_code = "missing_api_key"


class InvalidCredentialError(AuthenticationError):
    """Bad password, one-time code, or token signature."""
    error_code = "invalid_credentials"


class InvalidTokenError(InvalidCredentialError):
    """Bearer token rejected.

    ``reason`` is for logs and user messaging only; every reason is handled
    identically for access control.
    """

    error_code = "invalid_token"

    def __init__(
        self,
        message: str = "invalid token",
        *,
        reason: str = "signature",
        expired: bool = False,
    ) -> None:
        super().__init__(message, detail={"reason": reason})
        self.reason = reason
        self.expired = expired


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class TenantInactiveError(ForbiddenError):
    """Tenant exists but has been disabled by an operator."""
    error_code = "tenant_inactive"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TenantNotFoundError(NotFoundError):
    """No tenant owns the presented API key (or id)."""
    status_code = 401
    error_code = "tenant_not_found"


class PrincipalNotFoundError(NotFoundError):
    """Principal referenced by a token no longer exists."""
    pass


class ExpiredError(ServiceError):
    """One-time code, token, or grace period is past its deadline (400)."""
    status_code = 400
    error_code = "expired"


class MisconfiguredError(ServiceError):
    """Tenant has no usable signing or OAuth configuration (400)."""
    status_code = 400
    error_code = "misconfigured"


class UpstreamFailureError(ServiceError):
    """External identity provider failed; details stay in the logs (502)."""
    status_code = 502
    error_code = "upstream_failure"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class CrossTenantConflictError(ConflictError):
    """Federated identity is already bound to a different tenant."""
    error_code = "cross_tenant_conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingApiKeyError",
    "InvalidCredentialError",
    "InvalidTokenError",
    "ForbiddenError",
    "TenantInactiveError",
    "NotFoundError",
    "TenantNotFoundError",
    "PrincipalNotFoundError",
    "ExpiredError",
    "MisconfiguredError",
    "UpstreamFailureError",
    "ConflictError",
    "CrossTenantConflictError",
    "RateLimitedError",
    "ServerError",
]
