"""Unit tests for the error hierarchy and FastAPI exception handlers."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from stealth_engine.middleware.error_handler import (
    CaptchaSolveError,
    CircuitOpenError,
    CollectorError,
    DetectionError,
    ExtractionError,
    NavigationError,
    PoolExhaustedError,
    RecoveryExhaustedError,
    UnknownDataTypeError,
    ValidationError,
    register_error_handlers,
)


# ---------------------------------------------------------------------------
# Test app fixture
# ---------------------------------------------------------------------------


def _make_app() -> FastAPI:
    """Build a minimal FastAPI app with error handlers registered."""
    app = FastAPI()
    register_error_handlers(app)

    @app.get("/raise-collector")
    async def _raise_collector():
        raise CollectorError()

    @app.get("/raise-pool")
    async def _raise_pool():
        raise PoolExhaustedError()

    @app.get("/raise-circuit")
    async def _raise_circuit():
        raise CircuitOpenError(retry_after=42.0)

    @app.get("/raise-recovery")
    async def _raise_recovery():
        raise RecoveryExhaustedError(attempted=["delay", "fallback"], error_type="timeout")

    @app.get("/raise-navigation")
    async def _raise_navigation():
        raise NavigationError(code="ETIMEDOUT")

    @app.get("/raise-detection")
    async def _raise_detection():
        raise DetectionError()

    @app.get("/raise-captcha")
    async def _raise_captcha():
        raise CaptchaSolveError()

    @app.get("/raise-data-type")
    async def _raise_data_type():
        raise UnknownDataTypeError("No extraction schema registered for data type 'reviews'")

    @app.get("/raise-validation")
    async def _raise_validation():
        raise ValidationError("Bad field", fields=["url"])

    @app.get("/raise-unhandled")
    async def _raise_unhandled():
        raise RuntimeError("something unexpected")

    from pydantic import BaseModel

    class Payload(BaseModel):
        url: str
        max_attempts: int

    @app.post("/validate")
    async def _validate(payload: Payload):
        return {"ok": True}

    return app


@pytest.fixture()
def client():
    return TestClient(_make_app(), raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# Error hierarchy tests
# ---------------------------------------------------------------------------


class TestErrorHierarchy:
    """All custom errors are subclasses of CollectorError."""

    def test_all_subclass_collector_error(self):
        subclasses = [
            ValidationError,
            PoolExhaustedError,
            CircuitOpenError,
            RecoveryExhaustedError,
            NavigationError,
            DetectionError,
            ExtractionError,
            CaptchaSolveError,
            UnknownDataTypeError,
        ]
        for cls in subclasses:
            assert issubclass(cls, CollectorError)

    def test_default_messages(self):
        assert CollectorError().message == "Internal server error"
        assert PoolExhaustedError().message == "Identity pool exhausted"
        assert CircuitOpenError().message == "Circuit breaker open"
        assert RecoveryExhaustedError().message == "Recovery strategies exhausted"
        assert NavigationError().message == "Navigation failed"
        assert DetectionError().message == "Automation detected by target"
        assert ExtractionError().message == "Extraction failed"
        assert CaptchaSolveError().message == "CAPTCHA solving failed"
        assert UnknownDataTypeError().message == "Unknown data type"

    def test_custom_message_override(self):
        err = NavigationError("Timed out loading page")
        assert err.message == "Timed out loading page"
        assert str(err) == "Timed out loading page"

    def test_structured_attributes(self):
        nav = NavigationError(code="ECONNRESET", status=502, page_content="<html/>")
        assert (nav.code, nav.status, nav.page_content) == ("ECONNRESET", 502, "<html/>")
        assert "page_content" not in nav.details

        extraction = ExtractionError(selector=".price", expected_content="$1")
        assert extraction.selector == ".price"
        assert extraction.expected_content == "$1"

        exhausted = RecoveryExhaustedError(attempted=["delay"])
        assert exhausted.attempted == ["delay"]
        assert exhausted.details["attempted"] == ["delay"]

    def test_details_kwargs(self):
        err = ValidationError("Bad input", fields=["url", "country"])
        assert err.details == {"fields": ["url", "country"]}


# ---------------------------------------------------------------------------
# Exception handler tests
# ---------------------------------------------------------------------------


class TestExceptionHandlers:
    """FastAPI exception handlers return correct envelope and status codes."""

    @pytest.mark.parametrize(
        "path,expected_status,expected_error",
        [
            ("/raise-collector", 500, "Internal server error"),
            ("/raise-pool", 503, "Identity pool exhausted"),
            ("/raise-circuit", 503, "Circuit breaker open"),
            ("/raise-recovery", 502, "Recovery strategies exhausted"),
            ("/raise-navigation", 504, "Navigation failed"),
            ("/raise-detection", 403, "Automation detected by target"),
            ("/raise-captcha", 502, "CAPTCHA solving failed"),
            ("/raise-data-type", 400, "No extraction schema registered for data type 'reviews'"),
        ],
    )
    def test_collector_error_envelope(self, client, path, expected_status, expected_error):
        resp = client.get(path)
        assert resp.status_code == expected_status
        body = resp.json()
        assert body["success"] is False
        assert body["data"] is None
        assert body["error"] == expected_error

    def test_circuit_open_carries_retry_after(self, client):
        body = client.get("/raise-circuit").json()
        assert body["meta"] == {"retry_after": 42.0}

    def test_recovery_exhausted_lists_attempts(self, client):
        body = client.get("/raise-recovery").json()
        assert body["meta"] == {"attempted": ["delay", "fallback"], "error_type": "timeout"}

    def test_none_details_are_dropped(self, client):
        body = client.get("/raise-navigation").json()
        assert body["meta"] == {"code": "ETIMEDOUT"}
        assert client.get("/raise-collector").json()["meta"] is None

    def test_validation_error_with_details(self, client):
        resp = client.get("/raise-validation")
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "Bad field"
        assert body["meta"] == {"fields": ["url"]}

    def test_pydantic_request_validation_error(self, client):
        resp = client.post("/validate", json={"url": 123})
        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "Validation error"
        assert "fields" in body["meta"]
        assert len(body["meta"]["fields"]) > 0

    def test_unhandled_exception_returns_500(self, client):
        resp = client.get("/raise-unhandled")
        assert resp.status_code == 500
        body = resp.json()
        assert body["success"] is False
        assert body["error"] == "Internal server error"
        assert body["data"] is None
