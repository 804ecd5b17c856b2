# app/transport/middleware.py
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

# Callers (push gateway, admin console) may pass their own trace id
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def _request_id_from(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID")
    if incoming and _REQUEST_ID_RE.match(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag every request and response with X-Request-ID"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = _request_id_from(request)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line when a request starts, one when it ends, plus request metrics"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        method, path = request.method, request.url.path
        log = LogContext(logger, request_id=getattr(request.state, "request_id", "unknown"))
        started = time.perf_counter()

        log.info(
            f"Request started: {method} {path}",
            extra={"method": method, "path": path,
                   "client_ip": request.client.host if request.client else None},
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            AppMetrics.http_request(method, 500, duration_ms)
            log.error(
                f"Request failed: {method} {path} error={exc.__class__.__name__} "
                f"duration={duration_ms:.2f}ms",
                extra={"method": method, "path": path, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        AppMetrics.http_request(method, response.status_code, duration_ms)

        # require_actor stores the verified actor on request.state
        done = log.bind(actor_id=getattr(request.state, "actor_id", None))
        emit = done.warning if response.status_code >= 500 else done.info
        emit(
            f"Request completed: {method} {path} status={response.status_code} "
            f"duration={duration_ms:.2f}ms",
            extra={"method": method, "path": path,
                   "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Anything that escapes the route handlers becomes a JSON 500"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )
