from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    ConflictError,
    TotpMismatchError,
    ValidationError,
)
from sessionguard.service.totp import (
    BACKUP_CODE_COUNT,
    BACKUP_CODE_LENGTH,
    DEFAULT_DIGITS,
    DEFAULT_WINDOW,
    TOTPEnrollment,
    TOTPService,
)
from sessionguard.storage.kv import Key, KeyValueStore

logger = get_logger(__name__)

TWO_FACTOR_PREFIX = "two_factor"
# Concurrent verifications may race to consume the same backup code.
_CONSUME_ATTEMPTS = 3


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending: bool
    backup_codes_remaining: int

    @property
    def has_backup_codes(self) -> bool:
        return self.backup_codes_remaining > 0


@dataclass(frozen=True)
class TwoFactorVerification:
    method: str  # "totp" | "backup"
    backup_codes_remaining: Optional[int] = None


class TwoFactorService:
    """Per-user TOTP enrollment and verification backed by the key-value store.

    A user's record lives at ``("two_factor", user_id)`` as
    ``{secret, enabled, backupCodes, updatedAt}``; backup codes are stored as
    argon2 hashes and removed on use.
    """

    def __init__(
        self,
        store: KeyValueStore,
        totp: TOTPService,
        *,
        window: int = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.totp = totp
        self.window = window
        self._clock = clock

    @staticmethod
    def record_key(user_id: str) -> Key:
        return (TWO_FACTOR_PREFIX, user_id)

    def _stamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    async def _load(self, user_id: str):
        entry = await self.store.get(self.record_key(user_id))
        return entry, (entry.value if entry.exists else None)

    async def _write(
        self, user_id: str, versionstamp: Optional[str], record: dict[str, Any]
    ) -> None:
        key = self.record_key(user_id)
        committed = await self.store.atomic().check(key, versionstamp).set(key, record).commit()
        if not committed:
            raise ConflictError(
                "Two-factor settings changed concurrently; retry the request",
                error_code="TWO_FACTOR_CONFLICT",
            )

    def _check_code(self, code: str, secret: str) -> bool:
        return self.totp.verify_totp(code, secret, window=self.window, at=self._clock())

    async def status(self, user_id: str) -> TwoFactorStatus:
        _, record = await self._load(user_id)
        if record is None:
            return TwoFactorStatus(enabled=False, pending=False, backup_codes_remaining=0)
        enabled = bool(record.get("enabled"))
        return TwoFactorStatus(
            enabled=enabled,
            pending=not enabled,
            backup_codes_remaining=len(record.get("backupCodes") or []),
        )

    async def is_enabled(self, user_id: str) -> bool:
        _, record = await self._load(user_id)
        return bool(record and record.get("enabled"))

    async def setup(self, user_id: str, account_name: str) -> TOTPEnrollment:
        """Store a pending secret; it only takes effect once ``enable`` succeeds."""

        entry, record = await self._load(user_id)
        if record and record.get("enabled"):
            raise ConflictError(
                "Two-factor authentication is already enabled",
                error_code="TWO_FACTOR_ALREADY_ENABLED",
            )
        enrollment = self.totp.begin_enrollment(account_name)
        await self._write(
            user_id,
            entry.versionstamp,
            {
                "secret": enrollment.secret,
                "enabled": False,
                "backupCodes": [],
                "updatedAt": self._stamp(),
            },
        )
        logger.info("two_factor_setup_started", user_id=user_id)
        return enrollment

    async def enable(self, user_id: str, code: str) -> List[str]:
        """Confirm the pending secret with a first code and return fresh backup codes.

        The plaintext codes are returned exactly once; only hashes are kept.
        """

        entry, record = await self._load(user_id)
        if record is None:
            raise ValidationError(
                "No 2FA secret found. Run setup first.", error_code="NO_SECRET"
            )
        if record.get("enabled"):
            raise ConflictError(
                "Two-factor authentication is already enabled",
                error_code="TWO_FACTOR_ALREADY_ENABLED",
            )
        if not self._check_code(code, record["secret"]):
            logger.info("two_factor_enable_rejected", user_id=user_id)
            raise TotpMismatchError()
        backup_codes = self.totp.generate_backup_codes(BACKUP_CODE_COUNT)
        await self._write(
            user_id,
            entry.versionstamp,
            {
                **record,
                "enabled": True,
                "backupCodes": [self.totp.hash_backup_code(c) for c in backup_codes],
                "updatedAt": self._stamp(),
            },
        )
        logger.info("two_factor_enabled", user_id=user_id)
        return backup_codes

    async def verify(self, user_id: str, code: str) -> TwoFactorVerification:
        """Accept a current TOTP code or consume one single-use backup code."""

        code = (code or "").strip()
        for _ in range(_CONSUME_ATTEMPTS):
            entry, record = await self._load(user_id)
            if not record or not record.get("enabled"):
                raise ValidationError(
                    "2FA is not enabled for this user", error_code="TWO_FACTOR_NOT_ENABLED"
                )
            if len(code) == DEFAULT_DIGITS and self._check_code(code, record["secret"]):
                return TwoFactorVerification(method="totp")
            if len(code) != BACKUP_CODE_LENGTH:
                break
            hashed_codes = list(record.get("backupCodes") or [])
            index = self.totp.match_backup_code(code, hashed_codes)
            if index is None:
                break
            del hashed_codes[index]
            key = self.record_key(user_id)
            committed = await (
                self.store.atomic()
                .check(key, entry.versionstamp)
                .set(
                    key,
                    {**record, "backupCodes": hashed_codes, "updatedAt": self._stamp()},
                )
                .commit()
            )
            if committed:
                logger.info(
                    "backup_code_consumed", user_id=user_id, remaining=len(hashed_codes)
                )
                return TwoFactorVerification(
                    method="backup", backup_codes_remaining=len(hashed_codes)
                )
        logger.info("two_factor_verification_failed", user_id=user_id)
        raise TotpMismatchError()

    async def disable(self, user_id: str, code: str) -> None:
        entry, record = await self._load(user_id)
        if record is None:
            raise ValidationError(
                "2FA is not enabled", error_code="TWO_FACTOR_NOT_ENABLED"
            )
        if not self._check_code(code, record["secret"]):
            raise TotpMismatchError()
        key = self.record_key(user_id)
        committed = await self.store.atomic().check(key, entry.versionstamp).delete(key).commit()
        if not committed:
            raise ConflictError(
                "Two-factor settings changed concurrently; retry the request",
                error_code="TWO_FACTOR_CONFLICT",
            )
        logger.info("two_factor_disabled", user_id=user_id)
