from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from whisprnet.apps.api.response import error_response, is_versioned_request
from whisprnet.core.config import get_settings
from whisprnet.core.errors import WhisprError
from whisprnet.persistence.guards import OrganizationPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


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


def _auth_headers(status_code: int) -> dict[str, str] | None:
    return {"WWW-Authenticate": "Bearer"} if status_code == 401 else None


async def whispr_error_handler(request: Request, exc: WhisprError) -> JSONResponse:
    # Domain errors carry their own stable code and status.
    headers = _auth_headers(exc.status_code)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.message}, status_code=exc.status_code, headers=headers)
    payload = error_response(request=request, code=exc.code, message=exc.message, details=exc.details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def organization_predicate_exception_handler(
    request: Request, exc: OrganizationPredicateError
) -> JSONResponse:
    # A query built without its organization scope is a server bug, never a client error.
    logger.error("organization_predicate_missing path=%s", request.url.path)
    payload = error_response(
        request=request,
        code="ORGANIZATION_PREDICATE_REQUIRED",
        message="Organization scope missing for this query",
    )
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # No stack detail leaves the process unless debug_errors is on.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    details = None
    if get_settings().debug_errors:
        details = {"exception": exc.__class__.__name__, "message": str(exc)}
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
        details=details,
    )
    return JSONResponse(content=payload, status_code=500)
