"""Response envelope shared by every endpoint.

Successful and failed calls alike are rendered as
{ success: bool, data: T | None, error: str | None, meta: dict | None };
the exception handlers in ``middleware.error_handler`` build the same shape.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool
    data: T | None = None
    error: str | None = None
    meta: dict | None = None
