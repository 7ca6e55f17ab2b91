"""Tests for the stable error envelope returned by every failing endpoint.

{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from koauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from koauth.api.schemas import Envelope, ErrorBody
from koauth.service.errors import (
    ClientInactive,
    CodeAlreadyUsed,
    ConflictError,
    ExpiredCredential,
    InvalidScope,
    PkceMismatch,
)
from koauth.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="unauthorized")
        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="pkce_mismatch", message="leaks the reason")

    def test_details_accept_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"field": "email"}])
        assert error.details == [{"field": "email"}]


class TestEnvelope:
    def test_request_id_generated(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id != second.request_id

    def test_invalid_status(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (503, "service_unavailable"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_status_to_code(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_every_mapped_code_is_a_valid_error_body(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")

    def test_error_response_shape(self):
        response = _error_response(409, "duplicate", {"field": "email"})
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {"code": "conflict", "message": "duplicate", "details": {"field": "email"}}
        assert body["request_id"]


def _app_raising(exc):
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize("exc", [ExpiredCredential(), CodeAlreadyUsed(), PkceMismatch("verifier mismatch")])
    def test_normalized_credential_errors_are_opaque(self, exc):
        response = _app_raising(exc).get("/boom")
        assert response.status_code == 401
        assert response.json()["error"] == {"code": "unauthorized", "message": "unauthorized", "details": None}

    def test_client_inactive_is_explicit(self):
        response = _app_raising(ClientInactive("client is inactive")).get("/boom")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "client_inactive"

    def test_invalid_scope_carries_detail(self):
        response = _app_raising(InvalidScope("bad scope", detail={"scopes": ["admin"]})).get("/boom")
        assert response.json()["error"]["details"] == {"scopes": ["admin"]}

    def test_conflict(self):
        response = _app_raising(ConflictError("exists")).get("/boom")
        assert response.status_code == 409

    def test_constraint_violation(self):
        response = _app_raising(ConstraintViolation("dup", {"field": "prefix"})).get("/boom")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "prefix"}

    def test_store_unavailable(self):
        response = _app_raising(StoreUnavailable(attempts=3)).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_unexpected_error_hides_message(self):
        response = _app_raising(RuntimeError("secret internals")).get("/boom")
        assert response.status_code == 500
        assert "secret internals" not in response.text
        assert response.json()["error"]["code"] == "server_error"

    def test_request_validation(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/items/{item_id}")
        def item(item_id: int):
            return {"item_id": item_id}

        response = TestClient(app).get("/items/not-a-number")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
