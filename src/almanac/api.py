"""Starlette application: admin cache control, scheduled regeneration and read API.

Every JSON response carries ``success``. Failures add ``error`` (and ``code``
for expected errors); tracebacks never leave the process.
"""

from __future__ import annotations

import asyncio
import functools
import json
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route, Router

from almanac import __version__
from almanac.errors import AlmanacError, ConfigurationError, InvalidInputError
from almanac.models.api import CacheActionRequest
from almanac.models.page import PageSummary
from almanac.schedulers import (
    run_cache_cleanup_scheduler,
    run_regeneration_scheduler,
    run_startup_warming,
)
from almanac.slugs import normalise_slug
from almanac.state import open_app_state
from almanac.tools import get_page as t_get_page
from almanac.tools import graph_queries as t_graph
from almanac.transport import AdminSecurityMiddleware, bearer_token_matches

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from starlette.requests import Request

    from almanac.config import Settings
    from almanac.state import AppState

log = structlog.get_logger()

_ADMIN_LIST_LIMIT = 10


def _state(request: Request) -> AppState:
    return request.app.state.app_state


def _ok(payload: dict | None = None, status_code: int = 200, **fields: object) -> JSONResponse:
    return JSONResponse({"success": True, **(payload or {}), **fields}, status_code=status_code)


def _error(message: str, status_code: int, code: str | None = None) -> JSONResponse:
    body: dict[str, object] = {"success": False, "error": message}
    if code is not None:
        body["code"] = code
    return JSONResponse(body, status_code=status_code)


def json_endpoint(
    handler: Callable[[Request], Awaitable[JSONResponse]],
) -> Callable[[Request], Awaitable[JSONResponse]]:
    """Translate exceptions raised by ``handler`` into the JSON error envelope."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> JSONResponse:
        try:
            return await handler(request)
        except AlmanacError as exc:
            log.info(
                "api_error",
                path=request.url.path,
                code=exc.code,
                status_code=exc.status_code,
                error=exc.message,
            )
            return _error(exc.message, exc.status_code, exc.code)
        except Exception as exc:
            log.error("api_unhandled_error", path=request.url.path, exc_info=True)
            return _error(str(exc) or "Internal server error", 500)

    return wrapper


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise InvalidInputError(f"Malformed JSON body: {exc.msg}") from exc
    except UnicodeDecodeError as exc:
        raise InvalidInputError(f"Request body is not valid UTF-8: {exc.reason}") from exc
    if not isinstance(body, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return body


def _int_param(
    request: Request, name: str, default: int, *, low: int = 1, high: int = 100
) -> int:
    raw = request.query_params.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidInputError(f"'{name}' must be an integer, got {raw!r}") from exc
    if not low <= value <= high:
        raise InvalidInputError(f"'{name}' must be between {low} and {high}")
    return value


# ---------------------------------------------------------------------------
# Admin: /api/admin/cache
# ---------------------------------------------------------------------------


@json_endpoint
async def cache_overview(request: Request) -> JSONResponse:
    state = _state(request)
    threshold = state.settings.cache.low_confidence_threshold
    stale = await state.pages.get_stale_pages(_ADMIN_LIST_LIMIT)
    return _ok(
        database=(await state.cache.get_stats()).model_dump(mode="json"),
        runtime=state.stats.snapshot().model_dump(mode="json"),
        popular_pages=[
            p.model_dump(mode="json")
            for p in await state.pages.get_popular_pages(_ADMIN_LIST_LIMIT)
        ],
        low_confidence_pages=[
            p.model_dump(mode="json")
            for p in await state.pages.get_low_confidence_pages(threshold, _ADMIN_LIST_LIMIT)
        ],
        stale_pages=[
            PageSummary(
                slug=p.slug,
                title=p.title,
                views=p.view_count,
                confidence=p.confidence_score,
                expires_at=p.ttl_expires_at,
            ).model_dump(mode="json")
            for p in stale
        ],
        in_flight=state.inflight.in_flight(),
    )


@json_endpoint
async def cache_action(request: Request) -> JSONResponse:
    state = _state(request)
    try:
        body = CacheActionRequest.model_validate(await _read_json(request))
    except ValidationError as exc:
        raise InvalidInputError(_validation_message(exc)) from exc

    log.info("admin_cache_action", action=body.action, slug=body.slug)

    if body.action == "invalidate":
        if body.all or body.slug is None:
            count = await state.invalidation.invalidate_all()
            return _ok(message=f"Invalidated {count} pages", count=count)
        result = await state.invalidation.invalidate_one(body.slug)
        message = (
            f"Invalidated page '{body.slug}'"
            if result.deleted
            else f"Page '{body.slug}' was not cached"
        )
        return _ok(result.model_dump(), message=message)

    if body.action == "warm":
        topics = body.topics
        if body.wait:
            summary = await state.warming.warm(topics)
            return _ok(
                message=f"Warmed {summary.success} of {summary.total} topics",
                summary=summary.model_dump(mode="json"),
            )
        count = len(topics) if topics is not None else len(state.settings.warming.topics)
        try:
            state.tasks.submit("warming", lambda: state.warming.warm(topics))
        except asyncio.QueueFull:
            return _error("Background queue is full; try again later", 503)
        return _ok(
            message=f"Warming started for {count} topics",
            estimate=state.warming.estimate_duration(count).model_dump(),
            status_code=202,
        )

    if body.action == "regenerate":
        if body.slug is None:
            raise InvalidInputError("regenerate requires 'slug'")
        page = await state.regeneration.regenerate_one(body.slug, reason="admin")
        return _ok(
            message=f"Regenerated page '{page.slug}'",
            slug=page.slug,
            confidence_score=page.confidence_score,
            ttl_expires_at=page.ttl_expires_at.isoformat(),
        )

    # cleanup
    cleaned = await state.invalidation.cleanup(body.threshold)
    return _ok(
        cleaned.model_dump(),
        message=f"Cleaned up {cleaned.total} pages",
        total=cleaned.total,
    )


@json_endpoint
async def cache_delete(request: Request) -> JSONResponse:
    state = _state(request)
    raw = request.query_params.get("slug")
    if not raw:
        raise InvalidInputError("Query parameter 'slug' is required")
    try:
        slug = normalise_slug(raw)
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc
    result = await state.invalidation.invalidate_one(slug)
    message = f"Deleted page '{slug}'" if result.deleted else f"Page '{slug}' was not cached"
    return _ok(result.model_dump(), message=message)


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid request")
    return f"{location}: {message}" if location else message


# ---------------------------------------------------------------------------
# Cron: /api/cron/regenerate-stale
# ---------------------------------------------------------------------------


@json_endpoint
async def regenerate_stale(request: Request) -> JSONResponse:
    state = _state(request)
    secret = state.settings.regeneration.cron_secret
    if not secret:
        log.error("cron_secret_missing")
        raise ConfigurationError(
            "regeneration.cron_secret is not configured",
            "Set ALMANAC__REGENERATION__CRON_SECRET to enable scheduled regeneration.",
        )
    if not bearer_token_matches(request.headers, secret):
        log.warning("cron_unauthorized", client=request.client.host if request.client else None)
        return _error("Unauthorized", 401)

    summary = await state.regeneration.run()
    return _ok(
        message=(
            f"Regenerated {summary.success} of {summary.total} stale pages"
            f" ({summary.failed} failed, {summary.skipped} skipped)"
        ),
        summary=summary.model_dump(mode="json"),
    )


async def regenerate_stale_info(request: Request) -> JSONResponse:
    settings = _state(request).settings.regeneration
    return JSONResponse(
        {
            "endpoint": "/api/cron/regenerate-stale",
            "method": "GET",
            "description": (
                "Regenerates stale pages, most viewed first. "
                "Requires 'Authorization: Bearer <regeneration.cron_secret>'."
            ),
            "schedule": f"every {settings.interval_hours} hours",
            "batch_size": settings.batch_size,
            "delay_ms": settings.delay_ms,
            "interval_hours": settings.interval_hours,
        }
    )


# ---------------------------------------------------------------------------
# Read API: /api/wiki
# ---------------------------------------------------------------------------


@json_endpoint
async def read_page(request: Request) -> JSONResponse:
    page = await t_get_page.handle(request.path_params["slug"], _state(request))
    return _ok(page=page)


@json_endpoint
async def read_related(request: Request) -> JSONResponse:
    limit = _int_param(request, "limit", 10)
    result = await t_graph.handle_related(request.path_params["slug"], limit, _state(request))
    return _ok(result)


@json_endpoint
async def read_backlinks(request: Request) -> JSONResponse:
    limit = _int_param(request, "limit", 20)
    result = await t_graph.handle_backlinks(request.path_params["slug"], limit, _state(request))
    return _ok(result)


@json_endpoint
async def graph_overview(request: Request) -> JSONResponse:
    state = _state(request)
    top_n = _int_param(request, "top", 10)
    return _ok(
        graph=(await state.graph.get_graph_stats(top_n)).model_dump(mode="json"),
        candidates=(await state.graph.get_candidate_stats()).model_dump(mode="json"),
    )


@json_endpoint
async def suggestions(request: Request) -> JSONResponse:
    state = _state(request)
    limit = _int_param(request, "limit", 20)
    candidates = await state.graph.get_suggested_pages(limit)
    return _ok(suggestions=[c.model_dump(mode="json") for c in candidates])


@json_endpoint
async def orphans(request: Request) -> JSONResponse:
    state = _state(request)
    pages = await state.graph.find_orphaned_pages()
    return _ok(orphans=[p.model_dump(mode="json") for p in pages], count=len(pages))


async def health(request: Request) -> JSONResponse:
    snapshot = _state(request).stats.snapshot()
    return JSONResponse(
        {
            "status": "ok",
            "version": __version__,
            "uptime_seconds": round(snapshot.uptime_seconds, 1),
        }
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings,
    *,
    auth_key: str | None = None,
    state: AppState | None = None,
) -> Starlette:
    """Build the HTTP application.

    When ``state`` is given it is used as-is and no background schedulers are
    started; otherwise the lifespan opens the database and runs them.
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if state is not None:
            yield
            return

        log.info("server_starting", version=__version__, transport="http")
        async with open_app_state(settings) as app_state:
            app.state.app_state = app_state
            background = [
                asyncio.create_task(run_cache_cleanup_scheduler(app_state)),
                asyncio.create_task(run_regeneration_scheduler(app_state)),
                asyncio.create_task(run_startup_warming(app_state)),
            ]
            log.info("server_started", version=__version__, transport="http")
            try:
                yield
            finally:
                for task in background:
                    task.cancel()
                for task in background:
                    with suppress(asyncio.CancelledError):
                        await task
                log.info("server_stopping")

    admin = Router(
        routes=[
            Route("/cache", cache_overview, methods=["GET"]),
            Route("/cache", cache_action, methods=["POST"]),
            Route("/cache", cache_delete, methods=["DELETE"]),
        ]
    )

    routes = [
        Mount(
            "/api/admin",
            app=AdminSecurityMiddleware(
                admin,
                auth_enabled=settings.server.auth_enabled,
                auth_key=auth_key,
            ),
        ),
        Route("/api/cron/regenerate-stale", regenerate_stale, methods=["GET"]),
        Route("/api/cron/regenerate-stale", regenerate_stale_info, methods=["OPTIONS"]),
        Route("/api/wiki/pages/{slug}", read_page, methods=["GET"]),
        Route("/api/wiki/pages/{slug}/related", read_related, methods=["GET"]),
        Route("/api/wiki/pages/{slug}/backlinks", read_backlinks, methods=["GET"]),
        Route("/api/wiki/graph", graph_overview, methods=["GET"]),
        Route("/api/wiki/suggestions", suggestions, methods=["GET"]),
        Route("/api/wiki/orphans", orphans, methods=["GET"]),
        Route("/api/health", health, methods=["GET"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    if state is not None:
        app.state.app_state = state
    return app
