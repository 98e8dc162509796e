"""HTTP middleware for the graph API: optional key check and request auditing."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable, FrozenSet

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .metrics import record_request_metric

audit_logger = logging.getLogger("audit")

# Reachable without a key: liveness check and the generated docs.
OPEN_PATHS: FrozenSet[str] = frozenset({"/v1/health", "/docs", "/openapi.json", "/redoc"})


def _peer(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _route_template(request: Request) -> str:
    """Matched route path (``/v1/exchanges/{exchange_id}``), else the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Reject requests whose ``X-API-Key`` does not match the configured key."""

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in OPEN_PATHS:
            return await call_next(request)

        supplied = request.headers.get("X-API-Key") or ""
        if supplied and secrets.compare_digest(supplied, self.api_key):
            return await call_next(request)

        audit_logger.warning("AUTH_FAIL ip=%s path=%s", _peer(request), request.url.path)
        return JSONResponse(
            {"error": "Invalid or missing API key", "status_code": 401},
            status_code=401,
        )


class AuditLogMiddleware(BaseHTTPMiddleware):
    """One ``audit`` line and one request-metric observation per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        record_request_metric(
            method=request.method,
            path=_route_template(request),
            status=response.status_code,
            duration_seconds=elapsed,
        )
        audit_logger.info(
            "%s %s -> %d agent=%s ip=%s %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            request.query_params.get("agent", "main"),
            _peer(request),
            elapsed * 1000,
        )
        return response
