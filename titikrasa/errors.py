from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """An error that knows its HTTP status and how to present itself."""

    def __init__(
        self,
        status_code: int,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code or _CODES.get(status_code, "error")
        self.details = details


_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


class ERR:
    BAD_REQUEST = AppError(400, "Invalid request")
    UNAUTHORIZED = AppError(401, "Authentication required")
    FORBIDDEN = AppError(403, "You do not have access to this resource")
    NOT_FOUND = AppError(404, "Resource not found")
    CONFLICT = AppError(409, "Resource already exists")
    VALIDATION_ERROR = AppError(422, "Validation failed")
    SERVER_ERROR = AppError(500, "Something went wrong")


def app_error(
    template: AppError,
    message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AppError:
    return AppError(
        template.status_code,
        message or template.message,
        code=template.code,
        details=details if details is not None else template.details,
    )


def error_body(message: str, code: str, details: Optional[dict] = None) -> dict:
    error: dict[str, Any] = {"message": message, "code": code}
    if details is not None:
        error["details"] = details
    return {"data": None, "error": error, "meta": None}


async def _handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc
        )
    return JSONResponse(
        status_code=exc.status_code, content=error_body(exc.message, exc.code, exc.details)
    )


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        {
            "path": ".".join(str(part) for part in err.get("loc", ())),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=error_body("Validation failed", "validation_error", {"issues": issues}),
    )


async def _handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message, _CODES.get(exc.status_code, "error")),
        headers=getattr(exc, "headers", None),
    )


async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500, content=error_body("Something went wrong", "server_error")
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, _handle_http_exception)
    app.add_exception_handler(HTTPException, _handle_http_exception)
    app.add_exception_handler(Exception, _handle_unexpected)
