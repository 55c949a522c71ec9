# WORKFLOW: Structured logging middleware for request/response monitoring.
# Used by: api/main.py (all endpoints)
# Functions:
# 1. _log_request() - Log incoming request (method, path, query, client, body for writes)
# 2. _log_response() - Log response details (status, timing, content type)
# 3. _log_error() - Log unhandled errors with timing
#
# Logging flow: Request -> Log request -> Process -> Log response/error
# Each request gets a request_id bound into the structlog context.

import json
import time
import uuid
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = structlog.get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request.headers.get("x-request-id") or uuid.uuid4().hex)
        start_time = time.time()

        await self._log_request(request)

        try:
            response = await call_next(request)
        except Exception as e:
            await self._log_error(request, e, time.time() - start_time)
            raise

        await self._log_response(request, response, time.time() - start_time)
        return response

    async def _log_request(self, request: Request):
        body = None
        if request.method in ["POST", "PUT", "PATCH"]:
            raw = await request.body()
            if raw:
                try:
                    body = json.loads(raw.decode())
                except (UnicodeDecodeError, json.JSONDecodeError):
                    body = raw[:1000].decode(errors="replace")

        logger.info(
            "Incoming request",
            method=request.method,
            path=request.url.path,
            query_params=dict(request.query_params),
            body=body,
            client_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )

    async def _log_response(self, request: Request, response: Response, process_time: float):
        logger.info(
            "Response sent",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time_ms=round(process_time * 1000, 2),
            content_length=response.headers.get("content-length"),
            content_type=response.headers.get("content-type"),
        )

    async def _log_error(self, request: Request, error: Exception, process_time: float):
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error_type=type(error).__name__,
            error_message=str(error),
            process_time_ms=round(process_time * 1000, 2),
        )
