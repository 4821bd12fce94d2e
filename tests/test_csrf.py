import pytest
from starlette.requests import Request
from starlette.responses import Response

from sessionguard.service.csrf import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER_NAME,
    CSRFGuard,
    constant_time_compare,
)
from sessionguard.service.errors import (
    CsrfTokenInvalidError,
    CsrfTokenMissingError,
    ErrorKind,
)


def _request(method="POST", path="/v1/auth/logout", cookie=None, header=None):
    headers = []
    if cookie is not None:
        headers.append((b"cookie", f"{CSRF_COOKIE_NAME}={cookie}".encode()))
    if header is not None:
        headers.append((CSRF_HEADER_NAME.lower().encode(), header.encode()))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": headers,
        "query_string": b"",
    }
    return Request(scope)


@pytest.fixture
def guard():
    return CSRFGuard()


class TestConstantTimeCompare:
    def test_equal(self):
        assert constant_time_compare("abc123", "abc123")

    def test_single_byte_difference(self):
        assert not constant_time_compare("abc123", "abc124")

    def test_length_mismatch(self):
        assert not constant_time_compare("abc", "abcd")
        assert not constant_time_compare("", "a")

    def test_empty_strings(self):
        assert constant_time_compare("", "")

    def test_multibyte_characters(self):
        assert constant_time_compare("tökén", "tökén")
        assert not constant_time_compare("tökén", "tokén")


class TestTokenIssue:
    def test_token_is_64_hex_chars(self, guard):
        token = guard.generate_token()
        assert len(token) == 64
        int(token, 16)

    def test_cookie_attributes(self):
        response = Response()
        token = CSRFGuard(secure=True).set_csrf_token(response)
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{CSRF_COOKIE_NAME}={token}")
        assert "Max-Age=3600" in cookie
        assert "Path=/" in cookie
        assert "SameSite=strict" in cookie
        assert "Secure" in cookie
        assert "HttpOnly" not in cookie

    def test_insecure_cookie_outside_production(self, guard):
        response = Response()
        guard.set_csrf_token(response)
        assert "Secure" not in response.headers["set-cookie"]

    def test_existing_cookie_is_reused(self, guard):
        response = Response()
        token = guard.get_csrf_token(_request("GET", cookie="existing"), response)
        assert token == "existing"
        assert "set-cookie" not in response.headers

    def test_missing_cookie_issues_new_token(self, guard):
        response = Response()
        token = guard.get_csrf_token(_request("GET"), response)
        assert token in response.headers["set-cookie"]


class TestCheck:
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
    def test_safe_methods_skip_validation(self, guard, method):
        result = guard.check(method, None, None)
        assert result.ok
        assert result.skipped

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_unsafe_methods_require_token(self, guard, method):
        assert guard.check(method, None, None).kind == ErrorKind.CSRF_MISSING

    @pytest.mark.parametrize(
        "cookie,header", [("abc", None), (None, "abc"), ("", "abc"), ("abc", "")]
    )
    def test_either_side_missing(self, guard, cookie, header):
        assert guard.check("POST", cookie, header).kind == ErrorKind.CSRF_MISSING

    def test_mismatch(self, guard):
        assert guard.check("POST", "abc", "abd").kind == ErrorKind.CSRF_MISMATCH

    def test_match(self, guard):
        result = guard.check("POST", "abc", "abc")
        assert result.ok
        assert not result.skipped

    def test_exempt_path(self):
        guard = CSRFGuard(exempt_paths={"/webhooks/inbound"})
        assert guard.check("POST", None, None, path="/webhooks/inbound").skipped
        assert not guard.check("POST", None, None, path="/webhooks/other").ok


class TestVerifyRequest:
    def test_valid_request_passes(self, guard):
        guard.verify_request(_request(cookie="tok", header="tok"))

    def test_missing_raises(self, guard):
        with pytest.raises(CsrfTokenMissingError) as excinfo:
            guard.verify_request(_request(cookie="tok"))
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "CSRF_TOKEN_MISSING"

    def test_mismatch_raises(self, guard):
        with pytest.raises(CsrfTokenInvalidError) as excinfo:
            guard.verify_request(_request(cookie="tok", header="other"))
        assert excinfo.value.error_code == "CSRF_TOKEN_INVALID"

    def test_safe_request_passes_without_tokens(self, guard):
        guard.verify_request(_request("GET"))
