from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidTokenError,
)

if TYPE_CHECKING:
    from sessionguard.config import Settings

logger = get_logger(__name__)

ALGORITHM = "HS256"
MIN_SECRET_LENGTH = 32
ACCESS_TOKEN_TTL = "15m"
REFRESH_TOKEN_TTL = "30d"
# Fallback for unparseable durations. Callers treat hitting it as a config smell.
DEFAULT_DURATION_SECONDS = 7 * 24 * 60 * 60

_DURATION_RE = re.compile(r"^(\d+)([smhdw])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60, "w": 7 * 24 * 60 * 60}

Duration = Union[str, int, float, timedelta]


def parse_duration(value: Duration, default: int = DEFAULT_DURATION_SECONDS) -> int:
    """Convert ``"30m"``/``"24h"``/``"7d"`` style durations into seconds.

    Integers and timedeltas pass through. Anything unparseable returns
    ``default`` (7 days) and logs a warning instead of raising.
    """

    if isinstance(value, bool):
        value = str(value)
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    if isinstance(value, (int, float)):
        return int(value)
    match = _DURATION_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        logger.warning("duration_unparseable", value=repr(value), fallback=default)
        return default
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    token_id: str
    expires_at: int


@dataclass(frozen=True)
class TokenCheck:
    """Result of inspecting a token without raising."""

    claims: Optional[dict[str, Any]] = None
    kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.kind is None and self.claims is not None


class TokenService:
    """Signs and verifies compact HS256 tokens (access and refresh)."""

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: Duration = ACCESS_TOKEN_TTL,
        refresh_ttl: Duration = REFRESH_TOKEN_TTL,
        default_ttl: Duration = "7d",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError("JWT secret is not configured")
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._key = secret.encode("utf-8")
        self.access_ttl = parse_duration(access_ttl)
        self.refresh_ttl = parse_duration(refresh_ttl)
        self.default_ttl = parse_duration(default_ttl)
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: "Settings", *, clock: Callable[[], float] = time.time
    ) -> "TokenService":
        return cls(
            settings.jwt_secret or "",
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
            default_ttl=settings.jwt_expires_in,
            clock=clock,
        )

    def now(self) -> int:
        return int(self._clock())

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def create_token(
        self, claims: dict[str, Any], ttl: Optional[Duration] = None
    ) -> str:
        """Sign ``claims`` with a numeric ``exp`` of now + ttl seconds."""

        ttl_seconds = self.default_ttl if ttl is None else parse_duration(ttl)
        payload = {**claims, "exp": self.now() + ttl_seconds}
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def create_access_token(self, claims: dict[str, Any]) -> str:
        return self.create_token(
            {**claims, "type": "access", "iat": self.now()}, self.access_ttl
        )

    def create_refresh_token(self, claims: dict[str, Any]) -> IssuedRefreshToken:
        token_id = str(uuid.uuid4())
        issued_at = self.now()
        token = self.create_token(
            {**claims, "type": "refresh", "jti": token_id, "iat": issued_at},
            self.refresh_ttl,
        )
        return IssuedRefreshToken(
            token=token, token_id=token_id, expires_at=issued_at + self.refresh_ttl
        )

    def inspect_token(self, token: str) -> TokenCheck:
        """Verify signature and expiry, returning the failure kind instead of raising."""

        if not isinstance(token, str):
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, binascii.Error):
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)
        # Reject anything but HS256 to block algorithm confusion ("none", RS256...)
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return TokenCheck(kind=ErrorKind.INVALID_SIGNATURE)

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, binascii.Error):
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)
        if not isinstance(payload, dict):
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return TokenCheck(kind=ErrorKind.MALFORMED_TOKEN)
        if exp <= self._clock():
            return TokenCheck(kind=ErrorKind.EXPIRED_TOKEN)
        return TokenCheck(claims=payload)

    def verify_token(self, token: str) -> dict[str, Any]:
        """Return the claims of a valid token or raise a generic InvalidTokenError."""

        result = self.inspect_token(token)
        if not result.ok:
            logger.debug("token_verification_failed", reason=result.kind.value)
            raise InvalidTokenError(kind=result.kind)
        return result.claims
