from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from storefront_auth.api.schemas import ErrorBody
from storefront_auth.config import get_settings
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import ServiceError
from storefront_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes for statuses raised outside the service layer
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    423: "account_locked",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "server_error" if status_code >= 500 else "request_error"


def _error_response(
    status_code: int,
    error: str,
    *,
    code: Optional[str] = None,
    details: Optional[list] = None,
    retry_after: Optional[int] = None,
    message: Optional[str] = None,
) -> JSONResponse:
    if status_code == 400 and not details:
        # Validation failures always list at least one offending field
        details = [{"field": "body", "message": error}]
    body = ErrorBody(
        error=error,
        code=code or _error_code_for_status(status_code),
        details=details,
        retry_after=retry_after,
        message=message,
    )
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


def _validation_details(exc: RequestValidationError) -> list[dict[str, Any]]:
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(err.get("msg", "invalid value"))
        # pydantic prefixes custom ValueErrors with "Value error, "
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(loc) or "body", "message": message})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error contract: every error body carries ``error`` and ``code``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            details=exc.details,
            retry_after=getattr(exc, "retry_after", None),
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        field = exc.detail.get("field")
        details = [{"field": field, "message": exc.message}] if field else None
        return _error_response(400, exc.message, code="validation_error", details=details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(
            400, "Validation failed", code="validation_error", details=details
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        message = str(exc) if get_settings().is_development else "Something went wrong"
        return _error_response(
            500, "Internal server error", code="server_error", message=message
        )
