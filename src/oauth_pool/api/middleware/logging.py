"""Access logging middleware for structured HTTP request/response logging."""

import asyncio
import time

import shortuuid
import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint


logger = structlog.get_logger(__name__)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs method, path, status and duration."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("x-request-id") or shortuuid.uuid()
        request.state.request_id = request_id
        start_time = time.perf_counter()
        response: Response | None = None

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except (Exception, asyncio.CancelledError) as e:
                logger.error(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                    error_message=str(e),
                )
                raise

            logger.info(
                "request_complete",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                client_ip=request.client.host if request.client else "unknown",
            )

        response.headers["x-request-id"] = request_id
        return response
