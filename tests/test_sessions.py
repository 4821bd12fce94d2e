"""Tests for session issue, refresh rotation and logout flows."""

import asyncio

import pytest

from sessionguard.service.errors import (
    AuthenticationError,
    ErrorKind,
    ForbiddenError,
    InvalidTokenError,
    RefreshTokenNotFoundError,
    TokenRevokedError,
)
from sessionguard.service.revocation import RevocationStore
from sessionguard.service.sessions import SessionService
from sessionguard.service.tokens import TokenService
from sessionguard.service.two_factor import TwoFactorService


@pytest.fixture
def tokens(clock, jwt_secret):
    return TokenService(jwt_secret, clock=clock)


@pytest.fixture
def revocation(store, clock):
    return RevocationStore(store, clock=clock)


@pytest.fixture
def two_factor(store, totp_service, clock):
    return TwoFactorService(store, totp_service, clock=clock)


@pytest.fixture
def sessions(tokens, revocation, two_factor):
    return SessionService(tokens, revocation, two_factor=two_factor)


class TestStartSession:
    async def test_issues_access_and_refresh(self, sessions, tokens, revocation):
        issued = await sessions.start_session("u1", {"email": "u1@example.com"})
        access = tokens.verify_token(issued.access_token)
        refresh = tokens.verify_token(issued.refresh_token)
        assert access["type"] == "access"
        assert access["sub"] == "u1"
        assert access["email"] == "u1@example.com"
        assert refresh["type"] == "refresh"
        assert refresh["jti"] == issued.refresh_token_id
        assert await revocation.verify_refresh_token("u1", issued.refresh_token_id)
        assert issued.token_type == "bearer"

    async def test_reserved_claims_cannot_be_injected(self, sessions, tokens):
        issued = await sessions.start_session("u1", {"sub": "admin", "type": "refresh"})
        access = tokens.verify_token(issued.access_token)
        assert access["sub"] == "u1"
        assert access["type"] == "access"

    async def test_empty_subject(self, sessions):
        with pytest.raises(AuthenticationError):
            await sessions.start_session("")

    async def test_email_verification_required(self, tokens, revocation):
        sessions = SessionService(tokens, revocation, require_email_verification=True)
        with pytest.raises(ForbiddenError) as excinfo:
            await sessions.start_session("u1", email_verified=False)
        assert excinfo.value.error_code == "EMAIL_NOT_VERIFIED"
        await sessions.start_session("u1", email_verified=True)

    async def test_mfa_required_when_enabled_for_user(
        self, tokens, revocation, two_factor
    ):
        sessions = SessionService(
            tokens, revocation, two_factor=two_factor, enforce_mfa=True
        )
        await sessions.start_session("u1")

        enrollment = await two_factor.setup("u1", "alice")
        await two_factor.enable("u1", two_factor.totp.generate_totp(enrollment.secret))

        with pytest.raises(AuthenticationError) as excinfo:
            await sessions.start_session("u1")
        assert excinfo.value.error_code == "MFA_REQUIRED"
        await sessions.start_session("u1", mfa_verified=True)


class TestRefresh:
    async def test_rotation_issues_new_refresh_token(self, sessions, tokens, revocation):
        issued = await sessions.start_session("u1", {"email": "u1@example.com"})
        refreshed = await sessions.refresh_session(issued.refresh_token)

        assert refreshed.refresh_token != issued.refresh_token
        assert refreshed.refresh_token_id != issued.refresh_token_id
        assert tokens.verify_token(refreshed.access_token)["email"] == "u1@example.com"
        assert not await revocation.verify_refresh_token("u1", issued.refresh_token_id)
        assert await revocation.verify_refresh_token("u1", refreshed.refresh_token_id)

    async def test_replayed_refresh_token_is_revoked(self, sessions):
        issued = await sessions.start_session("u1")
        await sessions.refresh_session(issued.refresh_token)
        with pytest.raises(TokenRevokedError):
            await sessions.refresh_session(issued.refresh_token)

    async def test_concurrent_refresh_has_single_winner(self, sessions):
        issued = await sessions.start_session("u1")
        results = await asyncio.gather(
            sessions.refresh_session(issued.refresh_token),
            sessions.refresh_session(issued.refresh_token),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], (TokenRevokedError, RefreshTokenNotFoundError))

    async def test_without_rotation_refresh_token_is_reused(
        self, tokens, revocation
    ):
        sessions = SessionService(tokens, revocation, rotate_refresh_tokens=False)
        issued = await sessions.start_session("u1")
        first = await sessions.refresh_session(issued.refresh_token)
        second = await sessions.refresh_session(issued.refresh_token)
        assert first.refresh_token == second.refresh_token == issued.refresh_token
        assert await revocation.verify_refresh_token("u1", issued.refresh_token_id)

    async def test_access_token_is_not_a_refresh_token(self, sessions):
        issued = await sessions.start_session("u1")
        with pytest.raises(InvalidTokenError) as excinfo:
            await sessions.refresh_session(issued.access_token)
        assert excinfo.value.kind == ErrorKind.WRONG_TOKEN_TYPE

    async def test_missing_token(self, sessions):
        with pytest.raises(RefreshTokenNotFoundError):
            await sessions.refresh_session("")

    async def test_record_removed(self, sessions):
        issued = await sessions.start_session("u1")
        await sessions.end_all_sessions("u1")
        with pytest.raises(RefreshTokenNotFoundError):
            await sessions.refresh_session(issued.refresh_token)

    async def test_expired_refresh_token(self, sessions, clock):
        issued = await sessions.start_session("u1")
        clock.advance(30 * 24 * 3600)
        with pytest.raises(InvalidTokenError):
            await sessions.refresh_session(issued.refresh_token)


class TestAuthenticate:
    async def test_valid_access_token(self, sessions):
        issued = await sessions.start_session("u1", {"role": "admin"})
        context = await sessions.authenticate(issued.access_token)
        assert context.user_id == "u1"
        assert context.claims["role"] == "admin"

    async def test_refresh_token_rejected(self, sessions):
        issued = await sessions.start_session("u1")
        with pytest.raises(InvalidTokenError) as excinfo:
            await sessions.authenticate(issued.refresh_token)
        assert excinfo.value.kind == ErrorKind.WRONG_TOKEN_TYPE

    async def test_missing_token(self, sessions):
        with pytest.raises(AuthenticationError):
            await sessions.authenticate(None)

    async def test_expired_access_token(self, sessions, clock):
        issued = await sessions.start_session("u1")
        clock.advance(15 * 60)
        with pytest.raises(InvalidTokenError):
            await sessions.authenticate(issued.access_token)

    async def test_access_token_without_subject(self, sessions, tokens):
        token = tokens.create_access_token({"role": "admin"})
        with pytest.raises(InvalidTokenError):
            await sessions.authenticate(token)


class TestEndSession:
    async def test_logout_revokes_refresh_token(self, sessions, revocation):
        issued = await sessions.start_session("u1")
        assert await sessions.end_session(issued.refresh_token)
        assert await revocation.is_token_blacklisted(issued.refresh_token_id)
        assert not await revocation.verify_refresh_token("u1", issued.refresh_token_id)
        with pytest.raises(TokenRevokedError):
            await sessions.refresh_session(issued.refresh_token)

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    async def test_unusable_tokens_do_not_raise(self, sessions, token):
        assert await sessions.end_session(token) is False

    async def test_access_token_is_ignored(self, sessions):
        issued = await sessions.start_session("u1")
        assert await sessions.end_session(issued.access_token) is False

    async def test_end_all_sessions(self, sessions, revocation):
        for _ in range(3):
            await sessions.start_session("u1")
        other = await sessions.start_session("u2")

        report = await sessions.end_all_sessions("u1")

        assert report.revoked == 3
        assert report.complete
        assert await revocation.verify_refresh_token("u2", other.refresh_token_id)
