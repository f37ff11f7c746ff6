"""Application state container.

AppState is created once at startup by ``open_app_state`` and shared by both
transports: the FastMCP lifespan hands it to tool handlers via the MCP
Context, and the Starlette lifespan exposes it on ``request.state``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from almanac.cache import CacheService
from almanac.generation import GenerationGateway, build_http_client, build_providers
from almanac.graph import GraphEngine
from almanac.inflight import InFlightTracker
from almanac.invalidation import InvalidationManager
from almanac.links import LinkStore
from almanac.pages import PageStore
from almanac.refresh import PageRefresher
from almanac.regeneration import RegenerationScheduler
from almanac.stats import RuntimeStats
from almanac.tasks import TaskRunner
from almanac.throttle import GenerationThrottle
from almanac.warming import WarmingService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    import httpx

    from almanac.config import Settings
    from almanac.protocols import GenerationProvider

log = structlog.get_logger()


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every handler."""

    settings: Settings
    pages: PageStore
    links: LinkStore
    stats: RuntimeStats
    cache: CacheService
    invalidation: InvalidationManager
    gateway: GenerationGateway
    graph: GraphEngine
    inflight: InFlightTracker
    throttle: GenerationThrottle
    tasks: TaskRunner
    refresher: PageRefresher
    warming: WarmingService
    regeneration: RegenerationScheduler
    http_client: httpx.AsyncClient | None = None


async def build_app_state(
    settings: Settings,
    db: aiosqlite.Connection,
    providers: Sequence[GenerationProvider],
    *,
    http_client: httpx.AsyncClient | None = None,
) -> AppState:
    """Wire every component on top of an open database connection."""
    pages = PageStore(db)
    await pages.init_db()
    links = LinkStore(db)
    await links.init_db()

    stats = RuntimeStats()
    inflight = InFlightTracker()
    cache = CacheService(pages, stats, settings.cache)
    gateway = GenerationGateway(
        providers, stats, timeout_seconds=settings.generation.timeout_seconds
    )
    graph = GraphEngine(links)
    refresher = PageRefresher(gateway, cache, graph)

    return AppState(
        settings=settings,
        pages=pages,
        links=links,
        stats=stats,
        cache=cache,
        invalidation=InvalidationManager(pages, links, stats),
        gateway=gateway,
        graph=graph,
        inflight=inflight,
        throttle=GenerationThrottle.from_settings(settings.generation),
        tasks=TaskRunner(settings.tasks.workers, settings.tasks.queue_size),
        refresher=refresher,
        warming=WarmingService(pages, refresher, inflight, stats, settings.warming),
        regeneration=RegenerationScheduler(pages, refresher, inflight, settings.regeneration),
        http_client=http_client,
    )


@asynccontextmanager
async def open_app_state(settings: Settings) -> AsyncIterator[AppState]:
    """Open the database and HTTP client, build AppState, and clean up on exit."""
    db_path = Path(settings.cache.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    http_client = build_http_client()
    try:
        providers = build_providers(http_client, settings.generation)
        if not providers:
            log.warning(
                "no_generation_providers",
                hint="set generation.providers in almanac.yaml; cache misses will fail",
            )
        state = await build_app_state(settings, db, providers, http_client=http_client)
        state.tasks.start()
        try:
            yield state
        finally:
            await state.tasks.stop()
    finally:
        await http_client.aclose()
        await db.close()
