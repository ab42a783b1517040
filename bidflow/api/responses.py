"""
Response envelope and error mapping.

Every endpoint answers with ``{"success": bool, "data": ..., "message": ...}``.
This module is the single place where a ``DomainError`` kind becomes an HTTP
status code.
"""

from __future__ import annotations

import logging
from typing import Any, Generic, Optional, TypeVar

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from bidflow.core.result import DomainError, ErrorKind, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.GATEWAY: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# ---------------------------------------------------------------------------
# Envelope models
# ---------------------------------------------------------------------------

class Envelope(BaseModel, Generic[T]):
    """Standard response wrapper."""

    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None


class PageOut(BaseModel, Generic[T]):
    """One page of a listing."""

    items: list[T]
    page: int = Field(ge=1, description="Current page number (1-indexed)")
    page_size: int = Field(ge=1, description="Number of items per page")
    total_items: int = Field(ge=0, description="Total number of matching items")
    total_pages: int = Field(ge=0, description="Total number of pages")


def ok(data: Any = None, message: str | None = None) -> dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def page_out(page: Any, item_schema: type[BaseModel]) -> dict[str, Any]:
    """Convert a ``core.result.Page`` of ORM rows into ``PageOut`` fields."""
    total_pages = (page.total + page.page_size - 1) // page.page_size if page.total else 0
    return {
        "items": [item_schema.model_validate(item) for item in page.items],
        "page": page.page,
        "page_size": page.page_size,
        "total_items": page.total,
        "total_pages": total_pages,
    }


# ---------------------------------------------------------------------------
# Domain errors -> HTTP
# ---------------------------------------------------------------------------

class DomainHTTPException(HTTPException):
    """An ``HTTPException`` that keeps the originating ``DomainError``."""

    def __init__(self, error: DomainError) -> None:
        super().__init__(status_code=STATUS_BY_KIND[error.kind], detail=error.message)
        self.error = error


def unwrap_or_raise(result: Result[T]) -> T:
    """Return the result value or raise the mapped ``HTTPException``."""
    if not result.ok:
        raise DomainHTTPException(result.error)
    return result.value  # type: ignore[return-value]


def _error_body(message: str, data: Any = None) -> dict[str, Any]:
    return {"success": False, "data": data, "message": message}


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    data = None
    if isinstance(exc, DomainHTTPException):
        data = {"kind": exc.error.kind.value, **jsonable_encoder(exc.error.details)}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), data),
        headers=getattr(exc, "headers", None),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(
            "Request validation failed",
            {"kind": ErrorKind.VALIDATION.value, "errors": jsonable_encoder(exc.errors())},
        ),
    )


def register_exception_handlers(app: FastAPI, *, debug: bool = False) -> None:
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = f"{type(exc).__name__}: {exc}" if debug else "Internal server error"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(message, {"kind": ErrorKind.INTERNAL.value}),
        )

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
