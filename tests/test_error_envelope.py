"""Tests for the error envelope format and error mapping.

Error responses conform to:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from schoolauth.api.error_handling import _error_code_for_status, error_response
from schoolauth.api.schemas import Envelope, ErrorBody
from schoolauth.service.errors import (
    AuthErrorKind,
    AuthResult,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    StoreUnavailableError,
    error_for_kind,
)
from schoolauth.service.errors import ValidationError as ServiceValidationError


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")

        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_service_unavailable_is_a_stable_code(self):
        assert ErrorBody(code="service_unavailable", message="down").code == "service_unavailable"


class TestEnvelope:
    def test_status_must_be_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")

        assert first.request_id and second.request_id
        assert first.request_id != second.request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
            (418, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_shape(self):
        resp = error_response(401, "invalid or expired token")
        body = json.loads(resp.body)

        assert resp.status_code == 401
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid or expired token",
            "details": None,
        }
        assert body["request_id"]


class TestErrorKinds:
    @pytest.mark.parametrize(
        "kind,exc_type,status",
        [
            (AuthErrorKind.INVALID_CREDENTIALS, InvalidCredentialsError, 401),
            (AuthErrorKind.INVALID_TOKEN, InvalidTokenError, 401),
            (AuthErrorKind.STORE_UNAVAILABLE, StoreUnavailableError, 503),
            (AuthErrorKind.VALIDATION_ERROR, ServiceValidationError, 400),
            (AuthErrorKind.CONFLICT, ConflictError, 409),
        ],
    )
    def test_error_for_kind(self, kind, exc_type, status):
        exc = error_for_kind(kind)

        assert isinstance(exc, exc_type)
        assert exc.status_code == status

    def test_messages_do_not_reveal_cause(self):
        message = error_for_kind(AuthErrorKind.INVALID_TOKEN).message

        for leak in ("signature", "expired at", "store", "replay"):
            assert leak not in message

    def test_details_become_problem_list(self):
        exc = error_for_kind(AuthErrorKind.VALIDATION_ERROR, ["too short"])

        assert exc.detail == {"problems": ["too short"]}

    def test_auth_result(self):
        ok = AuthResult.success("value")
        failed = AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

        assert ok.ok and ok.value == "value"
        assert not failed.ok and failed.value is None


class TestHttpEnvelope:
    def test_unknown_route_is_not_found_envelope(self, client):
        resp = client.get("/v1/nowhere")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_request_id_header_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        resp = client.get("/v1/auth/me", headers={"X-Request-ID": "req-456"})

        assert resp.status_code == 401
        assert resp.json()["request_id"] == "req-456"

    def test_security_headers(self, client):
        resp = client.get("/healthz")

        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in resp.headers["Cache-Control"]
