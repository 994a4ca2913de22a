"""
Request tracing middleware

Each request gets an id (the caller's X-Request-ID when it looks sane,
otherwise a generated one). The id is bound into structlog contextvars for
the duration of the request and echoed on the response.
"""
import re
import time

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .utils import generate_request_id

logger = structlog.get_logger()

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Probes and scrapes would drown the access log at INFO
QUIET_PATHS = frozenset({"/health", "/metrics"})


def incoming_request_id(request: Request) -> str:
    candidate = request.headers.get("X-Request-ID", "")
    return candidate if _REQUEST_ID_PATTERN.match(candidate) else generate_request_id()


class RequestIDMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        request_id = incoming_request_id(request)
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("request_failed", error_type=type(e).__name__,
                         duration_ms=round((time.perf_counter() - started) * 1000, 2))
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "method", "path")

        duration_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

        log = logger.debug if request.url.path in QUIET_PATHS else logger.info
        log("request_completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            user_id=getattr(request.state, "user_id", None),
            duration_ms=round(duration_ms, 2))
        return response
