from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Request, Response

from sessionguard.api.schemas import (
    CsrfTokenResponse,
    Envelope,
    LogoutAllResponse,
    MessageResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableResponse,
    TwoFactorEnableResponse,
    TwoFactorSetupRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyResponse,
    VerifyResponse,
)
from sessionguard.service.errors import AuthenticationError
from sessionguard.service.rate_limit import (
    RateLimitDecision,
    get_policy,
    resolve_client_identifier,
)
from sessionguard.service.runtime import Runtime, get_runtime
from sessionguard.service.sessions import AuthContext, SessionTokens

router = APIRouter(prefix="/v1")

REFRESH_COOKIE_NAME = "refresh_token"


async def _enforce_rate_limit(
    runtime: Runtime, request: Request, policy_name: str, *, response: Optional[Response] = None
) -> Optional[RateLimitDecision]:
    """Count the request against a preset policy and expose X-RateLimit-* headers.

    Raises RateLimitExceededError (429, with Retry-After) once the window is full.
    """
    if not runtime.settings.rate_limit_enabled:
        return None
    identifier = resolve_client_identifier(request.headers)
    decision = await runtime.rate_limiter.enforce(get_policy(policy_name), identifier)
    # Error envelopes are fresh responses; the handler re-applies these headers.
    request.state.rate_limit = decision
    if response is not None:
        for name, value in decision.headers().items():
            response.headers[name] = value
    return decision


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("Missing or invalid authorization header")
    return await get_runtime().sessions.authenticate(token)


def _set_refresh_cookie(runtime: Runtime, response: Response, tokens: SessionTokens) -> None:
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        tokens.refresh_token,
        max_age=runtime.tokens.refresh_ttl,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _clear_refresh_cookie(runtime: Runtime, response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


@router.get("/auth/csrf-token", response_model=Envelope, tags=["auth"])
async def csrf_token(request: Request, response: Response):
    runtime = get_runtime()
    token = runtime.csrf.get_csrf_token(request, response)
    return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "api", response=response)
    tokens = await runtime.sessions.refresh_session(refresh_token or "")
    if tokens.refresh_token != refresh_token:
        _set_refresh_cookie(runtime, response, tokens)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            token_type=tokens.token_type,
            expires_in=runtime.tokens.access_ttl,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, refresh_token: Optional[str] = Cookie(None)):
    runtime = get_runtime()
    await runtime.sessions.end_session(refresh_token)
    _clear_refresh_cookie(runtime, response)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "api", response=response)
    report = await runtime.sessions.end_all_sessions(principal.user_id)
    _clear_refresh_cookie(runtime, response)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(
            message="Logged out from all devices successfully",
            revoked=report.revoked,
            failed=report.failed,
        ),
    )


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=VerifyResponse(valid=True, user_id=principal.user_id, claims=principal.claims),
    )


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    status = await get_runtime().two_factor.status(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            pending=status.pending,
            has_backup_codes=status.has_backup_codes,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(
    body: Optional[TwoFactorSetupRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    account_name = (
        (body.account_name if body else None)
        or principal.claims.get("email")
        or principal.user_id
    )
    enrollment = await get_runtime().two_factor.setup(principal.user_id, account_name)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=enrollment.secret,
            otpauth_url=enrollment.otpauth_url,
            manual_entry_key=enrollment.secret,
        ),
    )


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def two_factor_enable(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "auth", response=response)
    backup_codes = await runtime.two_factor.enable(principal.user_id, body.code)
    return Envelope(status="ok", data=TwoFactorEnableResponse(backup_codes=backup_codes))


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "auth", response=response)
    result = await runtime.two_factor.verify(principal.user_id, body.code)
    message = None
    if result.method == "backup":
        if result.backup_codes_remaining == 0:
            message = "Warning: This was your last backup code. Please generate new ones."
        else:
            message = f"Backup code used. {result.backup_codes_remaining} remaining."
    return Envelope(
        status="ok",
        data=TwoFactorVerifyResponse(
            method=result.method,
            backup_codes_remaining=result.backup_codes_remaining,
            message=message,
        ),
    )


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorCodeRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, "auth", response=response)
    await runtime.two_factor.disable(principal.user_id, body.code)
    return Envelope(status="ok", data=TwoFactorDisableResponse())
