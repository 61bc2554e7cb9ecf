"""Tests for the error envelope and the exception handlers.

Every failure leaves the service as:
{
    "success": false,
    "error": {"message": "<human readable>", "code": "<STABLE_CODE>"}
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcentral import app as app_module
from authcentral.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authcentral.api.schemas import Envelope, ErrorBody
from authcentral.service.errors import AccountLockedError, RoleNotFoundError
from authcentral.storage.errors import DuplicateField, InvalidReference, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="INVALID_CREDENTIALS", message="Invalid credentials")
        assert error.code == "INVALID_CREDENTIALS"
        assert error.message == "Invalid credentials"

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            ErrorBody(code="made_up", message="x")
        assert "Invalid error code" in str(exc_info.value)

    @pytest.mark.parametrize(
        "code",
        ["TOKEN_REVOKED", "ACCOUNT_LOCKED", "DUPLICATE_FIELD", "SERVICE_UNAVAILABLE"],
    )
    def test_known_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    def test_success_envelope(self):
        envelope = Envelope(success=True, message="done", data={"id": "1"})
        dumped = envelope.model_dump(exclude_none=True)
        assert dumped == {"success": True, "message": "done", "data": {"id": "1"}}

    def test_error_envelope_omits_data(self):
        envelope = Envelope(success=False, error=ErrorBody(code="FORBIDDEN", message="no"))
        dumped = envelope.model_dump(exclude_none=True)
        assert dumped == {"success": False, "error": {"message": "no", "code": "FORBIDDEN"}}


class TestErrorResponse:
    def test_status_mapping(self):
        assert _STATUS_TO_CODE[401] == "UNAUTHORIZED"
        assert _error_code_for_status(423) == "ACCOUNT_LOCKED"
        assert _error_code_for_status(503) == "SERVICE_UNAVAILABLE"
        assert _error_code_for_status(418) == "INTERNAL_ERROR"

    def test_response_body(self):
        response = _error_response(404, "Route not found: /x")
        assert response.status_code == 404
        assert json.loads(response.body) == {
            "success": False,
            "error": {"message": "Route not found: /x", "code": "NOT_FOUND"},
        }

    def test_explicit_code_wins(self):
        response = _error_response(400, "Duplicate field value", code="DUPLICATE_FIELD")
        assert json.loads(response.body)["error"]["code"] == "DUPLICATE_FIELD"


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/locked")
    async def locked():
        raise AccountLockedError("Account is locked. Try again later")

    @app.get("/role")
    async def role():
        raise RoleNotFoundError("Role not found")

    @app.get("/duplicate")
    async def duplicate():
        raise DuplicateField("role name already exists", {"field": "name"})

    @app.get("/reference")
    async def reference():
        raise InvalidReference("user or role does not exist")

    @app.get("/unavailable")
    async def unavailable():
        raise StoreUnavailable("redis unavailable", backend="redis")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    @pytest.mark.parametrize(
        "path,status,code",
        [
            ("/locked", 423, "ACCOUNT_LOCKED"),
            ("/role", 404, "ROLE_NOT_FOUND"),
            ("/duplicate", 400, "DUPLICATE_FIELD"),
            ("/reference", 400, "INVALID_REFERENCE"),
            ("/unavailable", 503, "SERVICE_UNAVAILABLE"),
            ("/boom", 500, "INTERNAL_ERROR"),
        ],
    )
    def test_exception_to_envelope(self, failing_client, path, status, code):
        response = failing_client.get(path)
        assert response.status_code == status
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == code

    def test_internal_details_not_leaked(self, failing_client):
        body = failing_client.get("/boom").json()
        assert body["error"]["message"] == "Internal server error"
        assert "secret" not in json.dumps(body)

    def test_storage_detail_not_leaked(self, failing_client):
        body = failing_client.get("/unavailable").json()
        assert body["error"]["message"] == "Service temporarily unavailable"


class TestUnknownRoutes:
    def test_unknown_route(self):
        client = TestClient(app_module.app)
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": {"message": "Route not found: /api/nope", "code": "NOT_FOUND"},
        }

    def test_wrong_method_reported_as_unknown_route(self):
        client = TestClient(app_module.app)
        response = client.get("/api/auth/login")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
