"""Double-submit cookie CSRF defence.

The server hands out a random token in a JS-readable cookie. State-changing
requests must echo it in the ``X-CSRF-Token`` header; a cross-origin page can
make the browser send the cookie but can neither read it nor set the header.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Iterable, Optional

from starlette.requests import Request
from starlette.responses import Response

from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    CsrfTokenInvalidError,
    CsrfTokenMissingError,
    ErrorKind,
)

logger = get_logger(__name__)

CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "X-CSRF-Token"
CSRF_TOKEN_BYTES = 32
CSRF_COOKIE_MAX_AGE = 60 * 60
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def constant_time_compare(a: str, b: str) -> bool:
    """Byte-wise XOR-accumulate comparison whose duration ignores the first mismatch."""

    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    result = 0
    for x, y in zip(a_bytes, b_bytes):
        result |= x ^ y
    return result == 0


@dataclass(frozen=True)
class CsrfCheck:
    kind: Optional[ErrorKind] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.kind is None


class CSRFGuard:
    def __init__(
        self,
        *,
        secure: bool = False,
        max_age: int = CSRF_COOKIE_MAX_AGE,
        cookie_name: str = CSRF_COOKIE_NAME,
        header_name: str = CSRF_HEADER_NAME,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        self.secure = secure
        self.max_age = max_age
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.exempt_paths = frozenset(exempt_paths)

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(CSRF_TOKEN_BYTES)

    def set_csrf_token(self, response: Response) -> str:
        """Issue a fresh token in a JS-readable, SameSite=Strict cookie."""

        token = self.generate_token()
        response.set_cookie(
            self.cookie_name,
            token,
            max_age=self.max_age,
            path="/",
            secure=self.secure,
            httponly=False,  # the client script must read it to echo the header
            samesite="strict",
        )
        return token

    def get_csrf_token(self, request: Request, response: Response) -> str:
        existing = request.cookies.get(self.cookie_name)
        if existing:
            return existing
        return self.set_csrf_token(response)

    def check(
        self,
        method: str,
        cookie_token: Optional[str],
        header_token: Optional[str],
        *,
        path: Optional[str] = None,
    ) -> CsrfCheck:
        if method.upper() in SAFE_METHODS or (path and path in self.exempt_paths):
            return CsrfCheck(skipped=True)
        if not cookie_token or not header_token:
            return CsrfCheck(kind=ErrorKind.CSRF_MISSING)
        if not constant_time_compare(cookie_token, header_token):
            return CsrfCheck(kind=ErrorKind.CSRF_MISMATCH)
        return CsrfCheck()

    def check_request(self, request: Request) -> CsrfCheck:
        return self.check(
            request.method,
            request.cookies.get(self.cookie_name),
            request.headers.get(self.header_name),
            path=request.url.path,
        )

    def verify_request(self, request: Request) -> None:
        """Raise the matching 403 error when ``request`` fails the check."""

        result = self.check_request(request)
        if result.ok:
            return
        logger.warning(
            "csrf_validation_failed",
            reason=result.kind.value,
            method=request.method,
            path=request.url.path,
        )
        if result.kind == ErrorKind.CSRF_MISSING:
            raise CsrfTokenMissingError()
        raise CsrfTokenInvalidError()
