from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionguard.logging import get_logger
from sessionguard.service.errors import TotpMismatchError, ValidationError

logger = get_logger(__name__)

SECRET_BYTES = 20  # 160 bits
DEFAULT_TIME_STEP = 30
DEFAULT_DIGITS = 6
DEFAULT_WINDOW = 1
BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
# Excludes look-alike characters (0/O, 1/I)
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


@dataclass(frozen=True)
class TOTPEnrollment:
    secret: str
    otpauth_url: str


class TOTPService:
    """RFC 6238 time-based one-time passwords over HMAC-SHA1 (RFC 4226).

    Every computation takes the counter explicitly; the clock is only read to
    derive a default counter, so concurrent verifications never interfere.
    """

    def __init__(
        self,
        *,
        issuer: str = "SessionGuard",
        clock: Callable[[], float] = time.time,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.issuer = issuer
        self._clock = clock
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    @staticmethod
    def generate_secret() -> str:
        """Return 160 random bits as an unpadded base32 string (32 chars)."""
        return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii")

    @staticmethod
    def _decode_secret(secret: str) -> bytes:
        normalized = secret.replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError("invalid TOTP secret") from exc
        if not key:
            raise ValidationError("invalid TOTP secret")
        return key

    def counter_at(
        self, timestamp: Optional[float] = None, *, time_step: int = DEFAULT_TIME_STEP
    ) -> int:
        """Counter for ``timestamp`` (defaults to now): floor(seconds / time_step)."""
        if time_step <= 0:
            raise ValueError("time_step must be positive")
        ts = self._clock() if timestamp is None else timestamp
        return int(ts // time_step)

    def generate_totp(
        self,
        secret: str,
        *,
        counter: Optional[int] = None,
        time_step: int = DEFAULT_TIME_STEP,
        digits: int = DEFAULT_DIGITS,
    ) -> str:
        """Compute the code for ``counter`` (current time step when omitted)."""

        if counter is None:
            counter = self.counter_at(time_step=time_step)
        if counter < 0:
            raise ValueError("counter must be non-negative")
        return self._hotp(self._decode_secret(secret), counter, digits)

    @staticmethod
    def _hotp(key: bytes, counter: int, digits: int) -> str:
        digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
        # Dynamic truncation, RFC 4226 section 5.3
        offset = digest[-1] & 0x0F
        code_int = (
            int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF
        ) % (10**digits)
        return str(code_int).zfill(digits)

    def verify_totp(
        self,
        code: str,
        secret: str,
        *,
        window: int = DEFAULT_WINDOW,
        time_step: int = DEFAULT_TIME_STEP,
        digits: int = DEFAULT_DIGITS,
        at: Optional[float] = None,
    ) -> bool:
        """Accept ``code`` if it matches any counter within +/- ``window`` steps."""

        if not isinstance(code, str):
            return False
        code = code.strip()
        if len(code) != digits or not code.isdigit():
            return False
        current = self.counter_at(at, time_step=time_step)
        try:
            key = self._decode_secret(secret)
        except ValidationError:
            logger.warning("totp_secret_invalid")
            return False
        matched = False
        for offset in range(-window, window + 1):
            counter = current + offset
            if counter < 0:
                continue
            expected = self._hotp(key, counter, digits)
            # Keep iterating after a match so timing does not reveal the offset.
            if hmac.compare_digest(expected.encode(), code.encode()):
                matched = True
        return matched

    def require_valid_code(self, code: str, secret: str, **kwargs) -> None:
        if not self.verify_totp(code, secret, **kwargs):
            raise TotpMismatchError()

    def generate_qr_code_url(
        self, secret: str, account_name: str, issuer: Optional[str] = None
    ) -> str:
        """Build the ``otpauth://totp/`` enrollment URI (SHA1, 6 digits, 30s).

        Rendering the URI as a scannable image is left to the client.
        """

        issuer = issuer or self.issuer
        label = quote(f"{issuer}:{account_name}", safe="")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": str(DEFAULT_DIGITS),
                "period": str(DEFAULT_TIME_STEP),
            }
        )
        return f"otpauth://totp/{label}?{params}"

    def begin_enrollment(
        self, account_name: str, issuer: Optional[str] = None
    ) -> TOTPEnrollment:
        secret = self.generate_secret()
        return TOTPEnrollment(
            secret=secret,
            otpauth_url=self.generate_qr_code_url(secret, account_name, issuer),
        )

    @staticmethod
    def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
        return [
            "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            for _ in range(count)
        ]

    def hash_backup_code(self, code: str) -> str:
        return self._hasher.hash(code.strip().upper())

    def match_backup_code(self, code: str, hashed_codes: Sequence[str]) -> Optional[int]:
        """Index of the stored hash matching ``code``, or None."""

        candidate = code.strip().upper()
        if len(candidate) != BACKUP_CODE_LENGTH:
            return None
        for index, hashed in enumerate(hashed_codes):
            try:
                if self._hasher.verify(hashed, candidate):
                    return index
            except (VerificationError, InvalidHash):
                continue
        return None
