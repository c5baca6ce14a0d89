from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class IdentityVerificationError(ValidationError):
    """Third-party identity assertion was rejected or could not be checked."""

    reason = "identity_verification_failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthError(AuthenticationError):
    """Credential failure with an internal ``reason`` kept for auditing.

    The outward message is always the same so callers cannot tell which
    check failed.
    """

    reason = "unauthorized"

    def __init__(self, message: str = "unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialError(AuthError):
    """Access credential failed parsing, signature or expiry checks."""
    reason = "invalid_credential"


class InvalidTokenError(AuthError):
    """Refresh token is blank or unknown."""
    reason = "invalid_token"


class TokenExpiredError(AuthError):
    """Refresh token is past its rotation TTL."""
    reason = "expired"


class ReuseDetectedError(AuthError):
    """An already consumed refresh token was presented; its family is revoked."""

    reason = "reuse_detected"

    def __init__(
        self,
        message: str = "unauthorized",
        *,
        family_id: Optional[str] = None,
        revoked_count: int = 0,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.family_id = family_id
        self.revoked_count = revoked_count


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "IdentityVerificationError",
    "AuthenticationError",
    "AuthError",
    "InvalidCredentialError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ReuseDetectedError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
