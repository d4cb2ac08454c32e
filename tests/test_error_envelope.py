"""Tests for the error envelope and exception mapping.

Every failure response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import json

import pytest
from pydantic import ValidationError

from sessionguard.api.error_handling import (
    _error_code_for_status,
    _error_response,
    service_error_response,
)
from sessionguard.api.schemas import Envelope, ErrorBody
from sessionguard.logging import set_correlation_id
from sessionguard.service.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidOrExpiredSession,
    RateLimited,
)


class TestErrorBody:
    def test_known_codes_accepted(self):
        for code in ("invalid_credentials", "invalid_session", "account_locked", "rate_limited"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("req-123")
        envelope = Envelope(status="error", error=ErrorBody(code="forbidden", message="no"))
        assert envelope.request_id == "req-123"

    def test_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (409, "conflict"),
            (423, "account_locked"),
            (429, "rate_limited"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_shape(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": {"id": "x"}}
        assert body["request_id"]


class TestServiceErrorResponse:
    def test_rate_limited_carries_retry_after(self):
        response = service_error_response(RateLimited("identity", 61))
        body = json.loads(response.body)
        assert response.status_code == 429
        assert response.headers["retry-after"] == "61"
        assert body["error"]["details"] == {"window": "identity", "retry_after": 61}

    def test_invalid_session_clears_cookie(self):
        response = service_error_response(InvalidOrExpiredSession())
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith("pm_rt=")
        assert "max-age=0" in cookie

    def test_invalid_credentials_has_no_details(self):
        response = service_error_response(InvalidCredentials())
        body = json.loads(response.body)
        assert response.status_code == 401
        assert body["error"] == {
            "code": "invalid_credentials",
            "message": "invalid credentials",
            "details": None,
        }
        assert "set-cookie" not in response.headers

    def test_account_locked_reports_minutes_only(self):
        response = service_error_response(AccountLocked(14 * 60 + 1))
        body = json.loads(response.body)
        assert response.status_code == 423
        assert body["error"]["message"] == "account locked, try again in ~15 min"
        assert body["error"]["details"] == {"retry_after_minutes": 15}
