"""JSON error envelope for the API.

Every failure leaves the API as ``{code, message, details, request_id}``.
Billing failures keep their own code and status; HTTP errors become
``http_<status>``.
"""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billcycle.schemas.common import ErrorResponse
from billcycle.services.billing.errors import BillingError

logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    return str(getattr(request.state, "request_id", None) or "unknown")


def _jsonable(value):
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: object = None,
) -> JSONResponse:
    body = ErrorResponse(
        code=code,
        message=message,
        details=_jsonable(details),
        request_id=_request_id(request),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _split_detail(status_code: int, detail: object) -> tuple[str, str, object]:
    if isinstance(detail, dict):
        return (
            detail.get("code", f"http_{status_code}"),
            detail.get("message", "Request failed"),
            detail.get("details"),
        )
    if isinstance(detail, str):
        return f"http_{status_code}", detail, None
    return f"http_{status_code}", "Request failed", detail


def register_error_handlers(app) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        logger.info(
            "Billing error %s on %s %s: %s",
            exc.code,
            request.method,
            request.url.path,
            exc.message,
        )
        return error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    # Also catches fastapi.HTTPException, which subclasses it.
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code, message, details = _split_detail(exc.status_code, exc.detail)
        return error_response(request, exc.status_code, code, message, details)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(
            request, 422, "validation_error", "Validation error", list(exc.errors())
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": _request_id(request)},
        )
        return error_response(request, 500, "internal_error", "Internal server error")
