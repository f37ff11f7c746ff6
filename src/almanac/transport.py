"""HTTP transport: admin security middleware and the uvicorn entry point."""

from __future__ import annotations

import re
import secrets
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.datastructures import Headers
from starlette.responses import JSONResponse

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send

    from almanac.config import Settings

log = structlog.get_logger()

_LOCALHOST_ORIGIN = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")


def bearer_token_matches(headers: Headers, expected: str) -> bool:
    auth_header = headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return False
    return secrets.compare_digest(auth_header[7:], expected)


class AdminSecurityMiddleware:
    """Pure ASGI middleware guarding the admin routes.

    Enforces two checks on every HTTP request:
    1. Optional bearer key authentication.
    2. Origin validation (localhost only) to prevent DNS rebinding.
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

            if self.auth_enabled and (
                not self.auth_key or not bearer_token_matches(headers, self.auth_key)
            ):
                response = JSONResponse(
                    {"success": False, "error": "Unauthorized"}, status_code=401
                )
                await response(scope, receive, send)
                return

            origin = headers.get("origin", "")
            if origin and not _LOCALHOST_ORIGIN.match(origin):
                response = JSONResponse({"success": False, "error": "Forbidden"}, status_code=403)
                await response(scope, receive, send)
                return

        await self.app(scope, receive, send)


def resolve_auth_key(settings: Settings) -> str | None:
    """Return the admin bearer key, generating one when auth is on but unset."""
    http_log = log.bind(transport="http")
    auth_key: str | None = settings.server.auth_key or None

    if settings.server.auth_enabled and not auth_key:
        auth_key = secrets.token_urlsafe(32)
        http_log.warning("http_auth_key_auto_generated", auth_key=auth_key)

    if not settings.server.auth_enabled:
        http_log.warning("http_auth_disabled")

    return auth_key


def run_http_server(settings: Settings) -> None:
    """Serve the admin, cron and read API over HTTP."""
    from almanac.api import create_app

    app = create_app(settings, auth_key=resolve_auth_key(settings))

    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )
