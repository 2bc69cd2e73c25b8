"""HTTP transport and security middleware for the gateway."""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send

    from feedgate.config import Settings

log = structlog.get_logger()

LOCALHOST_ORIGIN_PATTERN = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
_LOCALHOST_ORIGIN = re.compile(LOCALHOST_ORIGIN_PATTERN)

EXPOSED_HEADERS = ["ETag", "Last-Modified", "X-Final-Url", "X-Image-Cache", "X-TTS-Provider"]


def _reject(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"error": {"code": code, "message": message, "status": status}},
        status_code=status,
    )


class ProxySecurityMiddleware:
    """Pure ASGI middleware for HTTP transport security.

    Enforces two checks on every HTTP request:
    1. Optional bearer key authentication.
    2. Origin validation (localhost only) to prevent DNS rebinding.

    Implemented as pure ASGI (not BaseHTTPMiddleware) so that response
    bodies are never buffered by the middleware layer.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        auth_enabled: bool,
        auth_key: str | None = None,
    ) -> None:
        self.app = app
        self.auth_enabled = auth_enabled
        self.auth_key = auth_key

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            headers = Headers(scope=scope)

            # 1. Optional bearer key authentication
            if self.auth_enabled:
                auth_header = headers.get("authorization", "")
                if not auth_header.startswith("Bearer ") or not secrets.compare_digest(
                    auth_header[7:], self.auth_key or ""
                ):
                    await _reject(401, "UNAUTHORIZED", "Unauthorized")(scope, receive, send)
                    return

            # 2. Origin validation
            origin = headers.get("origin", "")
            if origin and not _LOCALHOST_ORIGIN.match(origin):
                await _reject(403, "ORIGIN_NOT_ALLOWED", "Forbidden")(scope, receive, send)
                return

        await self.app(scope, receive, send)


def secure_app(app: ASGIApp, *, auth_enabled: bool, auth_key: str | None) -> ASGIApp:
    """Wrap ``app`` with the security checks, then CORS for the reader surface.

    CORS sits outermost so browser preflights are answered without credentials.
    """
    secured = ProxySecurityMiddleware(app, auth_enabled=auth_enabled, auth_key=auth_key)
    return CORSMiddleware(
        secured,
        allow_origin_regex=LOCALHOST_ORIGIN_PATTERN,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "If-None-Match", "If-Modified-Since"],
        expose_headers=EXPOSED_HEADERS,
    )


def run_http_server(app: ASGIApp, settings: Settings) -> None:
    """Serve ``app`` over HTTP with uvicorn."""
    http_log = log.bind(transport="http")

    auth_key: str | None = settings.server.auth_key or None

    if settings.server.auth_enabled and not auth_key:
        auth_key = secrets.token_urlsafe(32)
        http_log.warning("http_auth_key_auto_generated", auth_key=auth_key)

    if not settings.server.auth_enabled:
        http_log.warning("http_auth_disabled")

    uvicorn.run(
        secure_app(app, auth_enabled=settings.server.auth_enabled, auth_key=auth_key),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )
