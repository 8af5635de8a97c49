"""Custom ASGI middleware for identity resolution, CSRF protection and request logging."""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..auth import identity as identity_module
from .metrics import record_request

SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


class IdentityMiddleware(BaseHTTPMiddleware):
    """Resolve one identity per API request and reject requests without one."""

    def __init__(self, app: Callable, api_prefix: str = "/api") -> None:
        super().__init__(app)
        self.api_prefix = api_prefix

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        path = request.url.path

        if path.startswith(self.api_prefix):
            bearer = identity_module.bearer_token(request.headers.get("Authorization"))
            resolution = await identity_module.resolve_identity(request.session, bearer)
            if resolution.identity is None:
                return JSONResponse({"detail": "Not authenticated"}, status_code=status.HTTP_401_UNAUTHORIZED)

            request.state.identity = resolution.identity

            # Bearer-authenticated clients cannot be driven by a third-party page.
            if bearer is None and request.method not in SAFE_METHODS:
                session_token = request.session.get(identity_module.SESSION_CSRF_TOKEN)
                header_token = request.headers.get("X-CSRF-Token")
                if not session_token or not header_token or header_token != session_token:
                    return JSONResponse(
                        {"detail": "Invalid CSRF token"},
                        status_code=status.HTTP_403_FORBIDDEN,
                    )

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log structured request summaries and emit metrics."""

    def __init__(self, app: Callable) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("parley.request")

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        method = request.method
        route = request.scope.get("route")
        route_path = getattr(route, "path", request.url.path)
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            duration = time.perf_counter() - start
            record_request(method, route_path, status_code, duration)
            self.logger.exception(
                "HTTP %s %s raised an unhandled exception", method, route_path
            )
            raise
        duration = time.perf_counter() - start

        identity = getattr(request.state, "identity", None)
        if identity is None:
            user = "anonymous"
        else:
            user = f"{identity.id}{' (guest)' if identity.is_anonymous else ''}"

        self.logger.info(
            "HTTP %s %s status=%s user=%s duration=%.3f",
            method,
            route_path,
            status_code,
            user,
            duration,
        )
        record_request(method, route_path, status_code, duration)
        response.headers.setdefault("X-Process-Time", f"{duration:.6f}")
        return response
