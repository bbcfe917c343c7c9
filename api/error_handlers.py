"""
Exception handlers mapping the AppError hierarchy to JSON responses.

Body shape for every error: {"error": <class name>, "message": str, "details": {}}
Request validation failures are producer errors and answer 400, like
InvalidPayloadError raised further in.
"""
from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.errors import AppError

logger = structlog.get_logger()


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    error_type = exc.__class__.__name__
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("api_error", error_type=error_type, message=exc.message,
        details=exc.details, path=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": error_type, "message": exc.message,
                 "details": jsonable_encoder(exc.details)},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("api_validation_error", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=400,
        content={"error": "ValidationError", "message": "Invalid request",
                 "details": {"errors": jsonable_encoder(exc.errors())}},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("api_unhandled_error", error=str(exc), path=request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "InternalServerError", "message": "Internal server error",
                 "details": {}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Usage:
        app = FastAPI()
        register_exception_handlers(app)
    """
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
