"""Tests for the JSON error body and exception handler mapping."""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from rollt.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from rollt.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
)
from rollt.storage.errors import ConstraintViolation


def _body(response):
    return json.loads(response.body)


class TestErrorResponse:
    def test_client_error_carries_message(self):
        response = _error_response(404, "Session not found")
        assert response.status_code == 404
        assert _body(response) == {"message": "Session not found"}

    def test_detail_keys_are_merged(self):
        response = _error_response(401, "Two-factor code required", {"twoFactorRequired": True})
        assert _body(response) == {"message": "Two-factor code required", "twoFactorRequired": True}

    def test_private_detail_keys_are_dropped(self):
        response = _error_response(409, "email already exists", {"user_id": "u1", "field": "email"})
        assert _body(response) == {"message": "email already exists", "field": "email"}

    def test_detail_cannot_override_message(self):
        response = _error_response(400, "real", {"message": "spoofed"})
        assert _body(response)["message"] == "real"

    def test_server_errors_are_generic(self):
        response = _error_response(500, "psycopg exploded at /srv/db", {"query": "SELECT"})
        assert _body(response) == {"message": "internal server error", "error": "server_error"}

    @pytest.mark.parametrize("status_code, code", sorted(_STATUS_TO_CODE.items()))
    def test_status_codes_map_to_stable_codes(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_type, status_code",
        [
            (BadRequestError, 400),
            (UnauthorizedError, 401),
            (ForbiddenError, 403),
            (NotFoundError, 404),
            (ConflictError, 409),
            (RateLimitedError, 429),
        ],
    )
    def test_status_codes(self, exc_type, status_code):
        assert exc_type("boom").status_code == status_code

    def test_status_override(self):
        err = BadRequestError("nope", status_code=422, detail={"field": "x"})
        assert err.status_code == 422
        assert err.detail == {"field": "x"}


class _Payload(BaseModel):
    count: int


def _app():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service")
    async def service_error():
        raise UnauthorizedError("Invalid email or password")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/crash")
    async def crash():
        raise RuntimeError("secret connection string postgresql://u:p@db")

    @app.post("/validate")
    async def validate(body: _Payload):
        return {"count": body.count}

    return app


class TestHandlers:
    def test_service_error_handler(self):
        client = TestClient(_app())
        response = client.get("/service")
        assert response.status_code == 401
        assert response.json() == {"message": "Invalid email or password"}

    def test_constraint_violation_is_conflict(self):
        client = TestClient(_app())
        response = client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["message"] == "username already exists"

    def test_uncaught_exception_hides_details(self):
        client = TestClient(_app(), raise_server_exceptions=False)
        response = client.get("/crash")
        assert response.status_code == 500
        assert response.json() == {"message": "internal server error", "error": "server_error"}

    def test_malformed_json_is_bad_request(self):
        client = TestClient(_app())
        response = client.post(
            "/validate", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["message"].startswith("Invalid request body")

    def test_schema_mismatch_is_bad_request(self):
        client = TestClient(_app())
        response = client.post("/validate", json={"count": "many"})
        assert response.status_code == 400
        assert "count" in response.json()["message"]

    def test_unknown_route_uses_error_body(self):
        client = TestClient(_app())
        response = client.get("/nowhere")
        assert response.status_code == 404
        assert response.json() == {"message": "Not Found"}
