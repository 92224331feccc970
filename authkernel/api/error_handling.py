from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from authkernel.api.schemas import Envelope, ErrorBody
from authkernel.logging import get_correlation_id, get_logger
from authkernel.service.errors import ServiceError
from authkernel.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_SERVER_ERROR_MESSAGES = {503: "service temporarily unavailable"}


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "server_error",
    headers: dict | None = None,
) -> JSONResponse:
    envelope = Envelope(status="error", error=ErrorBody(code=code, message=message, details=details))
    headers = dict(headers or {})
    if status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


async def _record_server_error(
    request: Request, message: str, status_code: int, error_code: str
) -> None:
    # Imported lazily so handlers can be registered before the runtime exists
    from authkernel.service.runtime import get_runtime

    await get_runtime().audit.record_error(
        message,
        error_code=error_code,
        status_code=status_code,
        path=request.url.path,
        method=request.method,
        request_id=get_correlation_id(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

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
        if exc.status_code >= 500:
            await _record_server_error(request, exc.message, exc.status_code, exc.error_code)
        headers = {}
        retry_after = exc.detail.get("retry_after_seconds") if exc.detail else None
        if retry_after:
            headers["Retry-After"] = str(retry_after)
        message, detail = exc.message, exc.detail
        if exc.status_code >= 500:
            # Operator-facing text stays in the logs
            message = _SERVER_ERROR_MESSAGES.get(exc.status_code, "internal server error")
            detail = None
        return _error_response(
            exc.status_code, message, detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        await _record_server_error(request, str(exc), 500, "server_error")
        return _error_response(500, "internal server error", code="server_error")
