from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from verticalguard.apps.api.response import error_response
from verticalguard.core.errors import (
    AuthzError,
    BadRequestError,
    ConflictError,
    InternalError,
    InvalidInputError,
    NotFoundError,
    UnauthorizedError,
)


logger = logging.getLogger(__name__)

# Bare HTTP errors borrow the code of the matching taxonomy base class.
_DEFAULT_ERROR_CODES: dict[int, str] = {
    error.status_code: error.code
    for error in (
        BadRequestError,
        UnauthorizedError,
        NotFoundError,
        ConflictError,
        InvalidInputError,
        InternalError,
    )
}
_DEFAULT_ERROR_CODES[403] = "AUTH_FORBIDDEN"
_DEFAULT_ERROR_CODES[405] = "METHOD_NOT_ALLOWED"


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def authz_exception_handler(request: Request, exc: AuthzError) -> JSONResponse:
    # Each error kind keeps its own code so admins can tell them apart.
    payload = error_response(request=request, code=exc.code, message=exc.message)
    return JSONResponse(content=payload, status_code=exc.status_code)


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("database_error path=%s", request.url.path, exc_info=exc)
    error = InternalError()
    payload = error_response(request=request, code=error.code, message=error.message)
    return JSONResponse(content=payload, status_code=error.status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for SDK parsing.
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def register_exception_handlers(app: Any) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(AuthzError, authz_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
