"""Shared test fixtures for the almanac test suite."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite
import pytest

from almanac.config import Settings
from almanac.links import LinkStore
from almanac.models.page import EntityLink, GenerationResult, PageMetadata
from almanac.pages import PageStore
from almanac.slugs import query_to_slug
from almanac.state import build_app_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from almanac.models.page import CachedPage
    from almanac.state import AppState


class FakeProvider:
    """Scriptable stand-in for the external generation service.

    Results and failures are keyed by slug (the query is slugified first), so
    tests can script outcomes without caring how the query was phrased.
    """

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.calls: list[str] = []
        self.results: dict[str, GenerationResult] = {}
        self.failures: dict[str, Exception] = {}
        self.delay: float = 0.0
        self.release: asyncio.Event | None = None

    async def generate(self, query: str) -> GenerationResult:
        self.calls.append(query)
        slug = query_to_slug(query)
        if self.release is not None:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if slug in self.failures:
            raise self.failures[slug]
        return self.results.get(slug) or _make_result(query.title())


def _make_result(
    title: str = "Sleep Training",
    *,
    confidence: float = 0.85,
    entities: list[tuple[str, str | None]] | None = None,
    sources: list[str] | None = None,
    published: bool | None = None,
) -> GenerationResult:
    return GenerationResult(
        title=title,
        content=f"# {title}\n\nGenerated content about {title.lower()}.",
        excerpt=f"About {title.lower()}",
        confidence_score=confidence,
        metadata=PageMetadata(
            sources_used=sources or [],
            entity_links=[EntityLink(entity=e, slug=s) for e, s in (entities or [])],
        ),
        published=published,
    )


async def _seed_page(
    pages: PageStore,
    slug: str,
    *,
    confidence: float = 0.8,
    view_count: int = 0,
    stale: bool = False,
    sources: list[str] | None = None,
) -> CachedPage:
    """Insert a page directly, optionally with a TTL that already elapsed."""
    now = datetime.now(UTC)
    if stale:
        generated_at, expires_at = now - timedelta(hours=50), now - timedelta(hours=2)
    else:
        generated_at, expires_at = now, now + timedelta(hours=48)
    return await pages.upsert(
        slug,
        title=slug.replace("-", " ").title(),
        content=f"Content for {slug}",
        excerpt=None,
        confidence_score=confidence,
        generated_at=generated_at,
        ttl_expires_at=expires_at,
        published=True,
        metadata=PageMetadata(sources_used=sources or []),
        view_count=view_count,
    )


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        cache={"db_path": str(tmp_path / "almanac.db")},
        regeneration={"delay_ms": 0, "cron_secret": "cron-secret"},
        warming={"delay_ms": 0, "topics": ["Sleep training", "Teething"]},
        generation={"timeout_seconds": 2},
    )


@pytest.fixture()
async def db() -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest.fixture()
async def page_store(db: aiosqlite.Connection) -> PageStore:
    store = PageStore(db)
    await store.init_db()
    return store


@pytest.fixture()
async def link_store(db: aiosqlite.Connection, page_store: PageStore) -> LinkStore:
    store = LinkStore(db)
    await store.init_db()
    return store


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def make_result():
    """Factory for GenerationResult objects."""
    return _make_result


@pytest.fixture()
def seed_page(page_store: PageStore):
    """Insert a page straight into the store: ``await seed_page("slug", stale=True)``."""

    async def seed(slug: str, **kwargs) -> CachedPage:
        return await _seed_page(page_store, slug, **kwargs)

    return seed


@pytest.fixture()
async def app_state(
    settings: Settings, db: aiosqlite.Connection, provider: FakeProvider
) -> AsyncIterator[AppState]:
    """Fully wired AppState over an in-memory database and a fake provider."""
    state = await build_app_state(settings, db, [provider])
    state.tasks.start()
    try:
        yield state
    finally:
        await state.tasks.stop()
