from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionguard.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "NO_SECRET",
    "TWO_FACTOR_NOT_ENABLED",
    "UNAUTHORIZED",
    "INVALID_TOKEN",
    "TOKEN_REVOKED",
    "REFRESH_TOKEN_NOT_FOUND",
    "INVALID_CODE",
    "MFA_REQUIRED",
    "FORBIDDEN",
    "EMAIL_NOT_VERIFIED",
    "CSRF_TOKEN_MISSING",
    "CSRF_TOKEN_INVALID",
    "NOT_FOUND",
    "CONFLICT",
    "TWO_FACTOR_ALREADY_ENABLED",
    "TWO_FACTOR_CONFLICT",
    "RATE_LIMIT_EXCEEDED",
    "SERVER_ERROR",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token lifetime in seconds")


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(BaseModel):
    message: str
    revoked: int
    failed: int = Field(0, description="Sessions whose revocation failed and remain valid")


class VerifyResponse(BaseModel):
    valid: bool
    user_id: str
    claims: dict[str, Any] = Field(default_factory=dict)


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    pending: bool = Field(..., description="A secret is configured but not yet confirmed")
    has_backup_codes: bool
    backup_codes_remaining: int


class TwoFactorSetupRequest(BaseModel):
    account_name: Optional[str] = Field(
        None, max_length=254, description="Label shown in the authenticator app"
    )


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_url: str
    manual_entry_key: str
    message: str = (
        "Scan the QR code with your authenticator app, then verify with a code to enable 2FA"
    )


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=8)

    @field_validator("code")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class TwoFactorEnableResponse(BaseModel):
    enabled: bool = True
    backup_codes: List[str]
    message: str = (
        "Two-factor authentication enabled successfully. Save your backup codes in a safe place."
    )


class TwoFactorVerifyResponse(BaseModel):
    verified: bool = True
    method: str
    backup_codes_remaining: Optional[int] = None
    message: Optional[str] = None


class TwoFactorDisableResponse(BaseModel):
    disabled: bool = True
    message: str = "Two-factor authentication has been disabled"
