from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tokengate.api.schemas import Envelope, ErrorBody
from tokengate.logging import get_logger
from tokengate.service.errors import ServiceError
from tokengate.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render an error envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for err in exc.errors():
        # drop "body" and keep the field path
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc), "message": err.get("msg", "invalid")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for service, storage and request errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        if exc.status_code >= 500:
            logger.error(
                "service_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=error_code,
                error_type=type(exc).__name__,
            )
            # internal failures never echo detail to the caller
            return _error_response(exc.status_code, "internal error", code=error_code)
        logger.info(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(500, "internal error", code="server_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        message = details[0]["message"] if details else "invalid request"
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
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
        return _error_response(500, "internal server error", code="server_error")
