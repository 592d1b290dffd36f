from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from grantflow.apps.api.response import error_response, is_versioned_request
from grantflow.core.errors import GrantflowError


logger = logging.getLogger(__name__)

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "EXTERNAL_PROVIDER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(request: Request, status_code: int, code: str, message: str, details: dict[str, Any] | None = None):
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def grantflow_error_handler(request: Request, exc: GrantflowError) -> JSONResponse:
    # Domain errors carry their own status and stable code.
    if exc.status_code >= 500:
        logger.error("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return _envelope(request, exc.status_code, exc.code, exc.message, exc.details)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers fastapi.HTTPException too; route dependencies raise it with a {code, message} detail.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    fallback = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback)
        message = str(detail.get("message") or "Request failed")
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")} or None
    else:
        code, message, extra = fallback, str(detail or "Request failed"), None
    response = _envelope(request, exc.status_code, code, message, extra)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # pydantic may embed exception objects in ``ctx``; keep only printable fields.
    errors = [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in exc.errors()
    ]
    return _envelope(request, 422, "REQUEST_VALIDATION_ERROR", "Validation error", {"errors": errors})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
