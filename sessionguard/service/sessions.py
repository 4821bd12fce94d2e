from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    AuthenticationError,
    ErrorKind,
    ForbiddenError,
    InvalidTokenError,
    RefreshTokenNotFoundError,
    ServerError,
    TokenRevokedError,
)
from sessionguard.service.revocation import RevocationReport, RevocationStore
from sessionguard.service.tokens import TokenService
from sessionguard.service.two_factor import TwoFactorService
from sessionguard.storage.errors import StorageError

logger = get_logger(__name__)

# Claims minted per token; everything else in a payload is carried over on refresh.
_RESERVED_CLAIMS = frozenset({"exp", "iat", "jti", "type", "sub"})


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    refresh_token_id: str
    refresh_expires_at: int
    token_type: str = "bearer"


@dataclass
class AuthContext:
    user_id: str
    claims: dict[str, Any] = field(default_factory=dict)


class SessionService:
    """Login, refresh, and logout flows over TokenService and RevocationStore."""

    def __init__(
        self,
        tokens: TokenService,
        revocation: RevocationStore,
        *,
        two_factor: Optional[TwoFactorService] = None,
        rotate_refresh_tokens: bool = True,
        enforce_mfa: bool = False,
        require_email_verification: bool = False,
    ) -> None:
        self.tokens = tokens
        self.revocation = revocation
        self.two_factor = two_factor
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.enforce_mfa = enforce_mfa
        self.require_email_verification = require_email_verification

    @staticmethod
    def _carried_claims(payload: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS}

    async def start_session(
        self,
        subject: str,
        claims: Optional[dict[str, Any]] = None,
        *,
        mfa_verified: bool = False,
        email_verified: bool = True,
    ) -> SessionTokens:
        """Mint an access/refresh pair for an already-authenticated subject.

        The refresh record is written in a single atomic commit that also
        asserts the token id is unused.
        """

        if not subject:
            raise AuthenticationError("Subject is required")
        if self.require_email_verification and not email_verified:
            raise ForbiddenError(
                "Email address has not been verified", error_code="EMAIL_NOT_VERIFIED"
            )
        if (
            self.enforce_mfa
            and not mfa_verified
            and self.two_factor is not None
            and await self.two_factor.is_enabled(subject)
        ):
            raise AuthenticationError(
                "Two-factor verification required", error_code="MFA_REQUIRED"
            )
        base_claims = {**self._carried_claims(claims or {}), "sub": subject}
        access_token = self.tokens.create_access_token(base_claims)
        issued = self.tokens.create_refresh_token(base_claims)
        op = self.revocation.stage_refresh_token(
            self.revocation.store.atomic(), subject, issued.token_id, issued.expires_at
        )
        if not await op.commit():
            # jti collision
            raise ServerError("Failed to persist refresh token")
        logger.info("session_started", user_id=subject, token_id=issued.token_id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=issued.token,
            refresh_token_id=issued.token_id,
            refresh_expires_at=issued.expires_at,
        )

    def _refresh_claims(self, refresh_token: str) -> dict[str, Any]:
        payload = self.tokens.verify_token(refresh_token)
        if payload.get("type") != "refresh":
            logger.debug("refresh_wrong_token_type", token_type=payload.get("type"))
            raise InvalidTokenError(kind=ErrorKind.WRONG_TOKEN_TYPE)
        if not isinstance(payload.get("jti"), str) or not isinstance(payload.get("sub"), str):
            raise InvalidTokenError(kind=ErrorKind.MALFORMED_TOKEN)
        return payload

    async def refresh_session(self, refresh_token: str) -> SessionTokens:
        """Exchange a refresh token for a new access token.

        With rotation on, the presented token is consumed and a new refresh
        token replaces it in the same commit; replaying the old one fails.
        """

        if not refresh_token:
            raise RefreshTokenNotFoundError()
        payload = self._refresh_claims(refresh_token)
        user_id, token_id = payload["sub"], payload["jti"]
        if await self.revocation.is_token_blacklisted(token_id):
            logger.warning("refresh_token_replayed", user_id=user_id, token_id=token_id)
            raise TokenRevokedError()
        if not await self.revocation.verify_refresh_token(user_id, token_id):
            raise RefreshTokenNotFoundError()

        claims = {**self._carried_claims(payload), "sub": user_id}
        access_token = self.tokens.create_access_token(claims)
        if not self.rotate_refresh_tokens:
            return SessionTokens(
                access_token=access_token,
                refresh_token=refresh_token,
                refresh_token_id=token_id,
                refresh_expires_at=int(payload["exp"]),
            )

        issued = self.tokens.create_refresh_token(claims)
        consumed = await self.revocation.consume_refresh_token(
            user_id,
            token_id,
            expires_at=payload["exp"],
            replacement_id=issued.token_id,
            replacement_expires_at=issued.expires_at,
        )
        if not consumed:
            # A concurrent refresh already used this token.
            raise RefreshTokenNotFoundError()
        logger.info(
            "session_refreshed",
            user_id=user_id,
            token_id=issued.token_id,
            replaced_id=token_id,
        )
        return SessionTokens(
            access_token=access_token,
            refresh_token=issued.token,
            refresh_token_id=issued.token_id,
            refresh_expires_at=issued.expires_at,
        )

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("Missing or invalid authorization header")
        payload = self.tokens.verify_token(access_token)
        if payload.get("type") != "access":
            raise InvalidTokenError(kind=ErrorKind.WRONG_TOKEN_TYPE)
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError(kind=ErrorKind.MALFORMED_TOKEN)
        jti = payload.get("jti")
        if isinstance(jti, str) and await self.revocation.is_token_blacklisted(jti):
            raise TokenRevokedError()
        return AuthContext(user_id=subject, claims=payload)

    async def end_session(self, refresh_token: Optional[str]) -> bool:
        """Blacklist and revoke a refresh token.

        Logout never fails from the caller's point of view: unusable tokens
        and storage faults are logged and reported as ``False``.
        """

        if not refresh_token:
            return False
        check = self.tokens.inspect_token(refresh_token)
        if not check.ok:
            logger.debug("logout_token_unusable", reason=check.kind.value)
            return False
        payload = check.claims
        token_id, user_id = payload.get("jti"), payload.get("sub")
        if payload.get("type") != "refresh" or not isinstance(token_id, str):
            return False
        try:
            await self.revocation.blacklist_token(token_id, payload["exp"])
            if isinstance(user_id, str):
                await self.revocation.revoke_refresh_token(user_id, token_id)
        except StorageError as exc:
            logger.warning(
                "logout_revocation_failed", user_id=user_id, token_id=token_id, error=str(exc)
            )
            return False
        logger.info("session_ended", user_id=user_id, token_id=token_id)
        return True

    async def end_all_sessions(self, subject: str) -> RevocationReport:
        return await self.revocation.revoke_all_user_tokens(subject)
