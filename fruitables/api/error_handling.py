from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from fruitables.api.schemas import Envelope, ErrorBody
from fruitables.logging import get_logger
from fruitables.service.errors import ServiceError
from fruitables.storage.errors import ConstraintViolation, StoreError, StoreErrorCode

logger = get_logger(__name__)

SERVER_ERROR_MESSAGE = "Oops! Something went wrong on our end...Server error"
UNAVAILABLE_MESSAGE = "Service is temporarily unavailable..try after sometime"

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid data..try again"
    message = str(errors[0].get("msg", "Invalid data..try again"))
    # pydantic prefixes messages raised from field validators
    return message.removeprefix("Value error, ")


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and transport errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        details = [
            {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", ""))}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, details, code="validation_error")

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        if isinstance(exc, ConstraintViolation):
            logger.warning(
                "constraint_violation",
                path=request.url.path,
                method=request.method,
                store_code=exc.code.value,
                detail=exc.detail,
            )
            return _error_response(409, exc.message, exc.detail, code="conflict")
        if exc.code is StoreErrorCode.UNAVAILABLE:
            logger.error(
                "store_unavailable", path=request.url.path, method=request.method
            )
            return _error_response(503, UNAVAILABLE_MESSAGE, code="service_unavailable")
        if exc.code is StoreErrorCode.MISSING_FIELD:
            logger.warning(
                "store_missing_field",
                path=request.url.path,
                method=request.method,
                detail=exc.detail,
            )
            return _error_response(400, "Invalid data..try again", code="validation_error")
        logger.error(
            "store_error",
            path=request.url.path,
            method=request.method,
            store_code=exc.code.value,
            error=exc.message,
        )
        return _error_response(500, SERVER_ERROR_MESSAGE, code="server_error")

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
        message = SERVER_ERROR_MESSAGE if exc.status_code == 500 else exc.message
        return _error_response(exc.status_code, message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and isinstance(exc.detail.get("error"), dict):
            error_obj = exc.detail["error"]
            message = error_obj.get("message", "http error")
            code = error_obj.get("code")
            details = error_obj.get("details")
            log_fn = logger.error if exc.status_code >= 500 else logger.warning
            log_fn(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code,
                message=message,
            )
            return _error_response(exc.status_code, message, details, code=code)
        message = exc.detail if isinstance(exc.detail, str) else "http error"
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
        return _error_response(500, SERVER_ERROR_MESSAGE, code="server_error")
