"""Error handling for the credential pool API.

Every ``OAuthPoolError`` already knows its ``error_type`` and ``status_code``;
the handlers here only render them as ``{"error": {"type", "message"}}``.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette import status
from structlog import get_logger

from oauth_pool.exceptions import ErrorType, OAuthPoolError


logger = get_logger(__name__)


def _build_error_response(
    status_code: int, error_type: str, message: str
) -> JSONResponse:
    """Build standardized error response."""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )


def setup_error_handlers(app: FastAPI) -> None:
    """Setup error handlers for the FastAPI application."""

    @app.exception_handler(OAuthPoolError)
    async def oauth_pool_error_handler(
        request: Request, exc: OAuthPoolError
    ) -> JSONResponse:
        """Handle all OAuthPoolError subclasses using their built-in attributes."""
        log_kwargs = {
            "error_type": exc.error_type.value,
            "error_message": exc.message,
            "status_code": exc.status_code,
            "request_method": request.method,
            "request_url": str(request.url.path),
        }
        if exc.status_code >= 500:
            logger.error(type(exc).__name__, **log_kwargs)
        else:
            logger.info(type(exc).__name__, **log_kwargs)

        return _build_error_response(exc.status_code, exc.error_type.value, exc.message)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        """Handle FastAPI HTTP exceptions."""
        logger.info(
            "http_exception",
            status_code=exc.status_code,
            error_message=exc.detail,
            request_method=request.method,
            request_url=str(request.url.path),
        )
        return _build_error_response(exc.status_code, "http_error", str(exc.detail))

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle all other unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error_message=str(exc),
            request_method=request.method,
            request_url=str(request.url.path),
            exc_info=exc,
        )
        return _build_error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            ErrorType.INTERNAL_SERVER.value,
            "An internal server error occurred",
        )
