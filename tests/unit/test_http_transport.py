"""Tests for AdminSecurityMiddleware.

Each test exercises the middleware directly via httpx's ASGI transport so no
real server is started. The inner app is a trivial 200-OK echo that never
runs if the middleware short-circuits.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from almanac.config import Settings
from almanac.transport import AdminSecurityMiddleware, resolve_auth_key

if TYPE_CHECKING:
    from starlette.types import ASGIApp, Receive, Scope, Send


async def _ok_app(scope: Scope, receive: Receive, send: Send) -> None:
    """Minimal ASGI app that always returns 200 OK."""
    await send({"type": "http.response.start", "status": 200, "headers": []})
    await send({"type": "http.response.body", "body": b"ok"})


def _client(app: ASGIApp) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://localhost",
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def test_auth_disabled_allows_any_request() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=False)
    async with _client(app) as client:
        response = await client.get("/cache")
    assert response.status_code == 200


async def test_auth_enabled_correct_key_passes() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=True, auth_key="secret-key")
    async with _client(app) as client:
        response = await client.get("/cache", headers={"Authorization": "Bearer secret-key"})
    assert response.status_code == 200


async def test_auth_enabled_wrong_key_returns_401_json() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=True, auth_key="secret-key")
    async with _client(app) as client:
        response = await client.get("/cache", headers={"Authorization": "Bearer wrong-key"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": "Unauthorized"}


async def test_auth_enabled_missing_header_returns_401() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=True, auth_key="secret-key")
    async with _client(app) as client:
        response = await client.get("/cache")
    assert response.status_code == 401


async def test_auth_enabled_without_key_rejects_everything() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=True, auth_key=None)
    async with _client(app) as client:
        response = await client.get("/cache", headers={"Authorization": "Bearer "})
    assert response.status_code == 401


# ---------------------------------------------------------------------------
# Origin validation
# ---------------------------------------------------------------------------


async def test_localhost_origin_allowed() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=False)
    async with _client(app) as client:
        response = await client.get("/cache", headers={"Origin": "http://localhost:3000"})
    assert response.status_code == 200


async def test_foreign_origin_forbidden() -> None:
    app = AdminSecurityMiddleware(_ok_app, auth_enabled=False)
    async with _client(app) as client:
        response = await client.get("/cache", headers={"Origin": "https://evil.example"})
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Key resolution
# ---------------------------------------------------------------------------


def test_configured_auth_key_is_used() -> None:
    settings = Settings(server={"auth_enabled": True, "auth_key": "configured"})
    assert resolve_auth_key(settings) == "configured"


def test_auth_key_generated_when_enabled_and_empty() -> None:
    settings = Settings(server={"auth_enabled": True, "auth_key": ""})
    key = resolve_auth_key(settings)
    assert key
    assert len(key) >= 32


def test_no_auth_key_when_disabled() -> None:
    settings = Settings(server={"auth_enabled": False})
    assert resolve_auth_key(settings) is None
