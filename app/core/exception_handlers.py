import logging

from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from tortoise.exceptions import BaseORMException

from app.core.errors import FulfillmentError
from app.schemas.response import ErrorDetail, ErrorResponse

log = logging.getLogger("api")


def _error_body(code: str, message, details=None) -> dict:
    # Every error response carries a fresh request id for tracing
    response = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details or None))
    return response.model_dump(exclude=None if details else {"error": {"details"}})


# ----------- Exception Handlers (called by FastAPI) -----------

def fulfillment_exception_handler(request: Request, exc: FulfillmentError):
    """Domain errors carry their own code and HTTP status."""
    if exc.status_code >= 500:
        log.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        log.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    body = _error_body(exc.code, exc.message, jsonable_encoder(exc.details))
    return JSONResponse(status_code=exc.status_code, content=body)


def storage_exception_handler(request: Request, exc: BaseORMException):
    """Database failures that escaped the services are reported as unavailable storage."""
    log.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content=_error_body("storage_error", "Storage unavailable"))


def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return JSONResponse(status_code=exc.status_code, content=_error_body("http_error", exc.detail))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    body = _error_body("validation_error", "Invalid input data", jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=422, content=body)


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.error(f"Unhandled exception on path: {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content=_error_body("server_error", "Internal Server Error"))


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(FulfillmentError, fulfillment_exception_handler)
    app.add_exception_handler(BaseORMException, storage_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    return app
