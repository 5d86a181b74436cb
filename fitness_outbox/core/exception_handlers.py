import logging
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from fitness_outbox.core.errors import StorageFailure
from fitness_outbox.schemas.response import ErrorDetail, ErrorResponse

log = logging.getLogger(__name__)


def _error(status_code: int, code: str, message, details=None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body.model_dump(exclude_none=True)))


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return _error(exc.status_code, "http_error", exc.detail)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    return _error(422, "validation_error", "Invalid input data", details=exc.errors())


def storage_failure_handler(request: Request, exc: StorageFailure):
    """The outbox table could not be read; the caller may retry later."""
    log.error(f"Outbox storage unavailable on path {request.url.path}: {exc}")
    return _error(503, "storage_unavailable", "Outbox storage is unavailable")


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.error(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    return _error(500, "server_error", "Internal Server Error")


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StorageFailure, storage_failure_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app
