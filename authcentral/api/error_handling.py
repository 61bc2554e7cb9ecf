from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from authcentral.api.schemas import Envelope, ErrorBody
from authcentral.logging import get_logger
from authcentral.service.errors import ForbiddenError, ServiceError
from authcentral.service.runtime import get_runtime
from authcentral.storage.errors import DuplicateField, InvalidReference, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    423: "ACCOUNT_LOCKED",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def _error_response(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    """Build the ``{success: false, error: {message, code}}`` envelope."""
    error_body = ErrorBody(message=message, code=code or _error_code_for_status(status_code))
    envelope = Envelope(success=False, error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(exclude_none=True))


def _audit_failure(request: Request, message: str, code: str) -> None:
    """Record failed requests made by an authenticated caller."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        return
    get_runtime().audit.record(
        "error",
        request.url.path,
        "failed",
        user_id=principal.user_id,
        request=getattr(request.state, "request_meta", None),
        metadata={"message": message, "code": code},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for domain, storage and framework errors."""

    @app.exception_handler(DuplicateField)
    async def handle_duplicate_field(request: Request, exc: DuplicateField):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        _audit_failure(request, "Duplicate field value", "DUPLICATE_FIELD")
        return _error_response(400, "Duplicate field value", code="DUPLICATE_FIELD")

    @app.exception_handler(InvalidReference)
    async def handle_invalid_reference(request: Request, exc: InvalidReference):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        _audit_failure(request, "Referenced resource not found", "INVALID_REFERENCE")
        return _error_response(400, "Referenced resource not found", code="INVALID_REFERENCE")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        # Retryable; details stay in the log
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            error=str(exc),
        )
        return _error_response(
            503, "Service temporarily unavailable", code="SERVICE_UNAVAILABLE"
        )

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
            detail=exc.detail,
        )
        if not isinstance(exc, ForbiddenError):
            # Permission denials are already recorded by the gate
            _audit_failure(request, exc.message, exc.error_code)
        return _error_response(exc.status_code, exc.message, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        if location:
            message = f"{location}: {message}"
        return _error_response(400, message, code="VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code in (404, 405):
            # An unmatched method is reported like an unknown route
            return _error_response(404, f"Route not found: {request.url.path}")
        message = exc.detail if isinstance(exc.detail, str) else "http error"
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
        )
        return _error_response(500, "Internal server error", code="INTERNAL_ERROR")
