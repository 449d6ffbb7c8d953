"""structlog setup and the request-context middleware used by every service."""

from __future__ import annotations

import logging
import sys
import time
from typing import Dict, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog

TENANT_HEADER = "X-Tenant-ID"
REQUEST_ID_HEADER = "X-Request-ID"
TRACE_ID_HEADER = "X-Trace-ID"


def configure_logging(service_name: str, level: int = logging.INFO) -> structlog.stdlib.BoundLogger:
    """Route structlog through stdlib logging as one JSON object per line."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger().bind(service=service_name)


def request_context(request: Request) -> Dict[str, Optional[str]]:
    """Correlation fields for one request.

    The tenant comes from ``X-Tenant-ID`` or, for ``/tenants/{id}/...``
    routes, from the path. A missing trace id falls back to the request id.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    tenant_id = request.headers.get(TENANT_HEADER)
    if not tenant_id:
        parts = [part for part in request.url.path.split("/") if part]
        if len(parts) >= 2 and parts[0] == "tenants":
            tenant_id = parts[1]
    return {
        "request_id": request_id,
        "trace_id": request.headers.get(TRACE_ID_HEADER) or request_id,
        "tenant_id": tenant_id,
        "path": request.url.path,
        "method": request.method,
    }


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Bind request context for every log line emitted while serving a request."""

    def __init__(self, app, *, logger: Optional[structlog.stdlib.BoundLogger] = None) -> None:
        super().__init__(app)
        self._logger = logger or structlog.get_logger()

    async def dispatch(self, request: Request, call_next) -> Response:
        context = request_context(request)
        structlog.contextvars.bind_contextvars(**context)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._logger.exception("request_failed")
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = context["request_id"]
            self._logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()
