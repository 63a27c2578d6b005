# prealert/transport/middleware.py
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from prealert.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

# Forwarded ids end up in log lines; anything else is replaced
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")

# Probes hit these every few seconds
QUIET_PATHS = frozenset({"/health", "/ready", "/metrics"})


def _request_id_from(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID_RE.match(incoming):
        return incoming
    return str(uuid.uuid4())


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id (reused from X-Request-ID when well-formed)."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _request_id_from(request)
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request: INFO for 2xx/3xx, WARNING for 4xx, ERROR for 5xx."""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in QUIET_PATHS:
            return await call_next(request)

        log_ctx = LogContext(logger, request_id=getattr(request.state, "request_id", None))
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            log_ctx.error(
                f"{request.method} {request.url.path} raised {exc.__class__.__name__} "
                f"after {(time.perf_counter() - start) * 1000:.1f}ms",
                exc_info=True,
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        message = f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)"
        if response.status_code >= 500:
            log_ctx.error(message)
        elif response.status_code >= 400:
            log_ctx.warning(message)
        else:
            log_ctx.info(message)
        return response
