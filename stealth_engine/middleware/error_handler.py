"""Global error hierarchy and FastAPI exception handlers.

All collector-specific errors extend CollectorError. Recovery strategies treat
a CollectorError raised by a collaborator as a failed strategy; everything
else propagates. The FastAPI exception handlers catch these errors (plus
Pydantic's RequestValidationError and unhandled exceptions) and return a
consistent JSON envelope: { success, data, error, meta }.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class CollectorError(Exception):
    """Base error for all collector-specific errors."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class ValidationError(CollectorError):
    """Payload validation failures, includes field-level details."""

    status_code = 422
    message = "Validation error"


class PoolExhaustedError(CollectorError):
    """No proxy identity matches the acquisition criteria."""

    status_code = 503
    message = "Identity pool exhausted"


class CircuitOpenError(CollectorError):
    """Circuit breaker open, callers must back off globally."""

    status_code = 503
    message = "Circuit breaker open"


class RecoveryExhaustedError(CollectorError):
    """Every recovery strategy for a fault failed."""

    status_code = 502
    message = "Recovery strategies exhausted"

    def __init__(
        self,
        message: str | None = None,
        *,
        classification: object = None,
        attempted: list[str] | None = None,
        **kwargs: object,
    ) -> None:
        self.classification = classification
        self.attempted = list(attempted or [])
        super().__init__(message, attempted=self.attempted, **kwargs)


class NavigationError(CollectorError):
    """Page navigation failed or timed out."""

    status_code = 504
    message = "Navigation failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status: int | None = None,
        page_content: str | None = None,
        **kwargs: object,
    ) -> None:
        self.code = code
        self.status = status
        self.page_content = page_content
        super().__init__(message, code=code, status=status, **kwargs)


class DetectionError(CollectorError):
    """The target identified the collector as automated."""

    status_code = 403
    message = "Automation detected by target"


class ExtractionError(CollectorError):
    """Expected content could not be extracted from the page."""

    status_code = 422
    message = "Extraction failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        selector: str | None = None,
        expected_content: str | None = None,
        **kwargs: object,
    ) -> None:
        self.selector = selector
        self.expected_content = expected_content
        super().__init__(message, selector=selector, **kwargs)


class CaptchaSolveError(CollectorError):
    """CAPTCHA solving service failed or timed out."""

    status_code = 502
    message = "CAPTCHA solving failed"


class UnknownDataTypeError(CollectorError):
    """No extraction schema registered for the requested data type."""

    status_code = 400
    message = "Unknown data type"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _collector_error_handler(_request: Request, exc: CollectorError) -> JSONResponse:
    """Handle CollectorError subclasses."""
    meta = {k: v for k, v in exc.details.items() if v is not None} or None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _validation_error_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI / Pydantic RequestValidationError (422)."""
    field_errors = [
        {
            "field": " -> ".join(str(loc) for loc in err["loc"]),
            "message": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors()
    ]
    return _envelope(
        status_code=422,
        error="Validation error",
        meta={"fields": field_errors},
    )


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions: log traceback, return generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


# ---------------------------------------------------------------------------
# Registration helper
# ---------------------------------------------------------------------------


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(CollectorError, _collector_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
