from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    """Machine-readable outcome kinds for verification results.

    Token-level kinds (expired, bad signature, malformed) are for server-side
    branching and logging only; outward responses collapse them into
    ``INVALID_TOKEN``.
    """

    EXPIRED_TOKEN = "expired_token"
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED_TOKEN = "malformed_token"
    WRONG_TOKEN_TYPE = "wrong_token_type"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    CSRF_MISSING = "csrf_missing"
    CSRF_MISMATCH = "csrf_mismatch"
    TOTP_MISMATCH = "totp_mismatch"


class ConfigurationError(RuntimeError):
    """Fatal misconfiguration detected while building services at startup."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered in the error envelope.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidTokenError(AuthenticationError):
    """Bad signature, malformed structure or expiry.

    The reason is kept in ``kind`` for logging; the message never says which
    check failed.
    """

    error_code = "INVALID_TOKEN"

    def __init__(
        self,
        message: str = "Invalid or expired token",
        *,
        kind: ErrorKind = ErrorKind.MALFORMED_TOKEN,
    ) -> None:
        super().__init__(message)
        self.kind = kind


class TokenRevokedError(AuthenticationError):
    error_code = "TOKEN_REVOKED"
    kind = ErrorKind.REVOKED

    def __init__(self, message: str = "Token has been revoked") -> None:
        super().__init__(message)


class RefreshTokenNotFoundError(AuthenticationError):
    """No live RefreshTokenRecord backs the presented refresh token."""

    error_code = "REFRESH_TOKEN_NOT_FOUND"
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str = "Refresh token not found") -> None:
        super().__init__(message)


class TotpMismatchError(AuthenticationError):
    error_code = "INVALID_CODE"
    kind = ErrorKind.TOTP_MISMATCH

    def __init__(self, message: str = "Invalid verification code") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class CsrfTokenMissingError(ForbiddenError):
    error_code = "CSRF_TOKEN_MISSING"
    kind = ErrorKind.CSRF_MISSING

    def __init__(self, message: str = "CSRF token is required") -> None:
        super().__init__(message)


class CsrfTokenInvalidError(ForbiddenError):
    error_code = "CSRF_TOKEN_INVALID"
    kind = ErrorKind.CSRF_MISMATCH

    def __init__(self, message: str = "Invalid CSRF token") -> None:
        super().__init__(message)


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429); carries the retry delay in seconds."""

    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(
            message, detail={"retry_after": retry_after}, headers=headers
        )
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ConflictError",
    "CsrfTokenInvalidError",
    "CsrfTokenMissingError",
    "ErrorKind",
    "ForbiddenError",
    "InvalidTokenError",
    "RateLimitExceededError",
    "RefreshTokenNotFoundError",
    "ServerError",
    "ServiceError",
    "TokenRevokedError",
    "TotpMismatchError",
    "ValidationError",
]
