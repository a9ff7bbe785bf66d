"""
Request tracing for the CRM API.

Every request gets an id (caller supplied or generated) that is echoed in the
``X-Request-Id`` header, stamped on log records and attached to error details,
so a 409/503 seen by a client can be traced to the duplicate-check log lines
that produced it. Calls on the CRM surfaces (contacts, deals, tools) also get a
one-line ``crm_request`` access log.
"""
from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Tuple
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
_INCOMING_HEADERS = ("X-Request-Id", "X-Correlation-Id")
TRACED_SEGMENTS: Tuple[str, ...] = ("/contacts", "/deals", "/mcp")

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


def get_request_id() -> str:
    return request_id_var.get()


class RequestIdLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


def _is_traced(path: str) -> bool:
    return any(segment in path for segment in TRACED_SEGMENTS)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # starlette headers are case-insensitive
        request_id = next(
            (request.headers[name] for name in _INCOMING_HEADERS if request.headers.get(name)),
            None,
        ) or uuid4().hex

        token = request_id_var.set(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
            if _is_traced(request.url.path):
                logger.info(
                    "crm_request route=%s method=%s status=%s elapsed_ms=%s",
                    request.url.path,
                    request.method,
                    response.status_code,
                    int((time.perf_counter() - start) * 1000),
                )
        finally:
            request_id_var.reset(token)

        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response
