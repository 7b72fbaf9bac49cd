from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from inboxrag.apps.api.response import error_envelope, is_tenant_route
from inboxrag.core.errors import (
    DocumentNotFound,
    InboxError,
    InfrastructureFailure,
    InvalidDocument,
    InvalidPayload,
    QuotaExceeded,
    TenantNotFound,
)


logger = logging.getLogger(__name__)

# First match wins, so subclasses must precede their bases.
_INBOX_ERROR_STATUS: tuple[tuple[type[InboxError], int, str], ...] = (
    (QuotaExceeded, 402, "QUOTA_EXCEEDED"),
    (TenantNotFound, 404, "NOT_FOUND"),
    (DocumentNotFound, 404, "NOT_FOUND"),
    (InvalidDocument, 422, "VALIDATION_ERROR"),
    (InvalidPayload, 422, "VALIDATION_ERROR"),
    (InfrastructureFailure, 503, "SERVICE_UNAVAILABLE"),
)

_HTTP_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def classify_inbox_error(exc: InboxError) -> tuple[int, str, dict[str, Any] | None]:
    for error_type, status_code, code in _INBOX_ERROR_STATUS:
        if isinstance(exc, error_type):
            details = None
            if isinstance(exc, QuotaExceeded):
                details = {"kind": exc.kind, "limit": exc.limit, "used": exc.used}
            return status_code, code, details
    return 400, "BAD_REQUEST", None


def _error(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    bare: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # Webhook and ops callers get FastAPI's plain {"detail": ...} shape.
    if not is_tenant_route(request):
        content = {"detail": message if bare is None else bare}
    else:
        content = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(content=content, status_code=status_code, headers=headers)


async def inbox_error_handler(request: Request, exc: InboxError) -> JSONResponse:
    status_code, code, details = classify_inbox_error(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s error=%s", request.url.path, exc.__class__.__name__)
        message = "Service temporarily unavailable"
    else:
        message = str(exc) or exc.__class__.__name__
    return _error(request, status_code, code=code, message=message, details=details)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI's HTTPException too, which subclasses Starlette's.
    code = _HTTP_STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    return _error(
        request,
        exc.status_code,
        code=code,
        message=str(exc.detail),
        bare=exc.detail,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    return _error(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
        bare=errors,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_unhandled_error path=%s", request.url.path)
    return _error(request, 500, code="INTERNAL_ERROR", message="Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InboxError, inbox_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
