"""Tool handler for get_page.

Receives AppState, orchestrates cache lookup / generation on miss /
background refresh of stale pages, and returns a structured dict.
No MCP or FastMCP imports; server.py and api.py handle the wiring.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from almanac.errors import GenerationThrottledError, InvalidInputError, NotFoundError
from almanac.models.tools import GetPageInput, GetPageOutput

if TYPE_CHECKING:
    from almanac.models.page import CachedPage
    from almanac.state import AppState


async def handle(slug: str, state: AppState) -> dict:
    """Handle a get_page call."""
    log = structlog.get_logger().bind(tool="get_page", slug=slug)
    log.info("handler_called")

    try:
        validated = GetPageInput(slug=slug)
    except ValueError as exc:
        raise InvalidInputError(
            str(exc),
            "Provide a topic or slug made of letters, digits and hyphens (max 200 chars).",
        ) from exc
    slug = validated.slug

    lookup = await state.cache.get(slug)

    if lookup.page is not None:
        page = lookup.page
        _ensure_published(page)
        refreshing = False
        if lookup.stale:
            refreshing = _schedule_refresh(page, state)
        return _build_output(page, cached=True, stale=lookup.stale, refreshing=refreshing)

    # Cache miss: generate now. Concurrent misses for the same slug share one generation.
    log.info("cache_miss_generating")
    page = await state.inflight.share(slug, lambda: _generate(slug, state))
    _ensure_published(page)
    return _build_output(page, cached=False, stale=False)


async def _generate(slug: str, state: AppState) -> CachedPage:
    state.throttle.acquire(slug)
    try:
        return await state.refresher.refresh(slug)
    finally:
        state.throttle.cool_down(slug)


def _ensure_published(page: CachedPage) -> None:
    if not page.published:
        raise NotFoundError(
            f"Page '{page.slug}' is not published",
            f"The page was held back (confidence {page.confidence_score:.2f}).",
        )


def _schedule_refresh(page: CachedPage, state: AppState) -> bool:
    """Queue a background regeneration of a stale page. Returns True if queued."""
    if state.inflight.is_in_flight(page.slug):
        return True

    # A throttled stale page is still served; the next read after the cooldown retries.
    try:
        state.throttle.acquire(page.slug)
    except GenerationThrottledError:
        return False

    async def refresh() -> None:
        if not await state.inflight.try_claim(page.slug):
            return
        try:
            await state.refresher.refresh(page.slug, previous=page, reason="stale_read")
        finally:
            state.throttle.cool_down(page.slug)
            await state.inflight.release(page.slug)

    try:
        state.tasks.submit(f"refresh:{page.slug}", refresh)
    except asyncio.QueueFull:
        structlog.get_logger().warning("background_refresh_dropped", slug=page.slug)
        return False
    return True


def _build_output(
    page: CachedPage,
    *,
    cached: bool,
    stale: bool,
    refreshing: bool = False,
) -> dict:
    return GetPageOutput(
        slug=page.slug,
        title=page.title,
        content=page.content,
        excerpt=page.excerpt,
        confidence_score=page.confidence_score,
        generated_at=page.generated_at,
        ttl_expires_at=page.ttl_expires_at,
        view_count=page.view_count,
        published=page.published,
        cached=cached,
        stale=stale,
        refreshing=refreshing,
    ).model_dump(mode="json")
