"""
Exception handlers.

Domain errors become `{"error": ..., "code": ...}` JSON with the matching
status; anything unexpected is logged in full and answered with a generic
500 body.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from commerce_core.core import get_logger
from commerce_core.domain.errors import (
    AuthorizationError, CommerceError, ConflictError, InvalidTransition, NotFoundError,
    PaymentGatewayError, ValidationError,
)

logger = get_logger(__name__)

# Most specific first; WebhookSignatureError falls under ValidationError.
STATUS_BY_ERROR = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (ConflictError, 409),
    (PaymentGatewayError, 502),
)

HTTP_CODES = {
    401: "UNAUTHORIZED",
    403: "ACCESS_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def status_for(exc: CommerceError) -> int:
    for error_cls, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": exc.message, "code": exc.code})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail), "code": HTTP_CODES.get(exc.status_code, "HTTP_ERROR")},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )
