"""Map service exceptions onto the JSON error envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import HashFormatError, IdentityError, RetryableIdentityError, StoreError
from ..security.totp import SecretSealError

logger = logging.getLogger(__name__)

_HTTP_KINDS = {
    400: "bad_request",
    404: "not_found",
    405: "method_not_allowed",
}


def error_response(
    status_code: int,
    kind: str,
    message: str,
    detail: dict | list | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = {"error": {"kind": kind, "message": message, "detail": detail or {}}}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every failure leaves the API as ``{"error": {...}}``."""

    @app.exception_handler(IdentityError)
    async def handle_identity_error(request: Request, exc: IdentityError):
        headers = None
        if isinstance(exc, RetryableIdentityError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        logger.info("%s %s -> %s", request.method, request.url.path, exc.kind)
        return error_response(exc.status_code, exc.kind, exc.message, exc.detail, headers)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        kind = _HTTP_KINDS.get(exc.status_code, "http_error")
        return error_response(exc.status_code, kind, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
            for error in exc.errors()
        ]
        return error_response(422, "validation_error", "request validation failed", errors)

    # Infrastructure and data-corruption failures never leak their message.
    @app.exception_handler(StoreError)
    @app.exception_handler(HashFormatError)
    @app.exception_handler(SecretSealError)
    async def handle_internal_error(request: Request, exc: Exception):
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.__class__.__name__, exc_info=exc
        )
        return error_response(500, "internal_error", "internal server error")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.error("unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return error_response(500, "internal_error", "internal server error")
