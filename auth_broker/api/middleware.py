"""Middleware for request correlation, cache headers and metrics auth."""

import base64
import binascii
import hmac
import uuid
from typing import Awaitable, Callable, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.status import HTTP_401_UNAUTHORIZED


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track and propagate a unique request ID for each request.
    Adds X-Request-ID to response headers and attaches to request.state.
    """
    async def dispatch(self, request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class NoStoreCacheControl(BaseHTTPMiddleware):
    """Middleware that stops auth responses (tokens, redirects) from being cached."""

    def __init__(self, app, paths: Optional[Iterable[str]] = None):
        """
        Initialize the cache control middleware.

        Args:
            app: The FastAPI application
            paths: Path prefixes whose responses must never be cached
        """
        super().__init__(app)
        self.paths = tuple(paths or ("/auth/",))

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        if request.url.path.startswith(self.paths):
            # Overrides anything set upstream; these responses carry tokens or set cookies
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"

        return response


class MetricsAuthMiddleware:
    """ASGI wrapper requiring HTTP basic auth in front of the metrics app."""

    def __init__(self, app, username, password):
        self.app = app
        self.username = username
        self.password = password

    async def _reject(self, scope, receive, send):
        response = Response(
            status_code=HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Basic"},
        )
        await response(scope, receive, send)

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            headers = dict(scope.get("headers") or [])
            auth_header = headers.get(b"authorization")
            if not auth_header or not auth_header.startswith(b"Basic "):
                await self._reject(scope, receive, send)
                return
            try:
                encoded = auth_header.split(b" ", 1)[1]
                decoded = base64.b64decode(encoded, validate=True).decode()
                username, password = decoded.split(":", 1)
            except (binascii.Error, UnicodeDecodeError, ValueError):
                await self._reject(scope, receive, send)
                return
            user_ok = hmac.compare_digest(username.encode(), self.username.encode())
            pass_ok = hmac.compare_digest(password.encode(), self.password.encode())
            if not (user_ok and pass_ok):
                await self._reject(scope, receive, send)
                return
        await self.app(scope, receive, send)
