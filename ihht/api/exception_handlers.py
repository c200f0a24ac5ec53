"""
Global exception handlers for FastAPI.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

import structlog

from ihht.core.exceptions import (
    ConfigurationError,
    IHHTEngineError,
    InvalidConfigError,
    NoActiveSessionError,
    SessionAlreadyActiveError,
)

log = structlog.get_logger(__name__)


def setup_exception_handlers(app: FastAPI):
    """Register custom exception handlers with the FastAPI application.

    Sets up handlers for all IHHTEngineError subclasses with appropriate
    HTTP status codes, plus handlers for configuration errors and generic exceptions.
    """

    @app.exception_handler(IHHTEngineError)
    async def engine_error_handler(
        request: Request,
        exc: IHHTEngineError,
    ) -> JSONResponse:
        """Handle IHHTEngineError exceptions with appropriate HTTP status codes.

        Invalid session configuration maps to 400, a second session to 409 and
        operations without an active session to 404.
        """
        log_ctx = log.bind(
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

        if isinstance(exc, InvalidConfigError):
            status_code = status.HTTP_400_BAD_REQUEST
        elif isinstance(exc, SessionAlreadyActiveError):
            status_code = status.HTTP_409_CONFLICT
        elif isinstance(exc, NoActiveSessionError):
            status_code = status.HTTP_404_NOT_FOUND

        log_ctx.warning(
            "request_error",
            message=exc.message,
            status_code=status_code,
        )

        return JSONResponse(
            status_code=status_code,
            content={
                "error": {
                    "type": type(exc).__name__,
                    "message": exc.message,
                }
            },
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request,
        exc: ConfigurationError,
    ) -> JSONResponse:
        """Handle configuration errors with HTTP 500 status."""
        log.error(
            "configuration_error",
            path=request.url.path,
            message=exc.message,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "type": "ConfigurationError",
                    "message": "Server configuration error",
                }
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle all unhandled exceptions with HTTP 500 status.

        Logs the error with full context and returns a generic response.
        """
        log_ctx = log.bind(
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )

        log_ctx.error(
            "unhandled_exception",
            message=str(exc),
            exc_info=exc,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "type": "InternalServerError",
                    "message": "An unexpected error occurred",
                }
            },
        )
