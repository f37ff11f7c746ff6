"""Unit tests for almanac.pages.PageStore."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite
import pytest

from almanac.errors import StoreError
from almanac.models.page import PageMetadata

if TYPE_CHECKING:
    from almanac.pages import PageStore


async def _upsert(store: PageStore, slug: str, **overrides):
    now = datetime.now(UTC)
    fields = {
        "title": "Title",
        "content": "Body",
        "excerpt": None,
        "confidence_score": 0.8,
        "generated_at": now,
        "ttl_expires_at": now + timedelta(hours=48),
        "published": True,
        "metadata": PageMetadata(),
    }
    fields.update(overrides)
    return await store.upsert(slug, **fields)


class TestUpsert:
    async def test_insert_and_get(self, page_store: PageStore) -> None:
        await _upsert(page_store, "teething", title="Teething", view_count=3)
        page = await page_store.get("teething")
        assert page is not None
        assert page.title == "Teething"
        assert page.view_count == 3
        assert page.stale is False
        assert page.created_at is not None

    async def test_get_missing_returns_none(self, page_store: PageStore) -> None:
        assert await page_store.get("nope") is None

    async def test_update_in_place_replaces_content(self, page_store: PageStore) -> None:
        await _upsert(page_store, "teething", content="v1")
        await _upsert(page_store, "teething", content="v2", confidence_score=0.6)
        page = await page_store.get("teething")
        assert page is not None
        assert page.content == "v2"
        assert page.confidence_score == 0.6

    async def test_view_count_never_lowered(self, page_store: PageStore) -> None:
        await _upsert(page_store, "teething", view_count=42)
        await _upsert(page_store, "teething", view_count=0)
        page = await page_store.get("teething")
        assert page is not None
        assert page.view_count == 42

    async def test_view_count_can_be_raised(self, page_store: PageStore) -> None:
        await _upsert(page_store, "teething", view_count=5)
        page = await _upsert(page_store, "teething", view_count=9)
        assert page.view_count == 9

    async def test_metadata_round_trips_extra_keys(self, page_store: PageStore) -> None:
        metadata = PageMetadata.model_validate(
            {"sources_used": ["doc-1"], "regeneration_reason": "stale_ttl"}
        )
        page = await _upsert(page_store, "teething", metadata=metadata)
        assert page.metadata.sources_used == ["doc-1"]
        assert page.metadata.model_extra == {"regeneration_reason": "stale_ttl"}

    async def test_ttl_must_follow_generation(self, page_store: PageStore) -> None:
        now = datetime.now(UTC)
        with pytest.raises(ValueError, match="ttl_expires_at"):
            await _upsert(page_store, "teething", generated_at=now, ttl_expires_at=now)


class TestStaleness:
    async def test_expired_page_reads_as_stale(self, page_store: PageStore) -> None:
        now = datetime.now(UTC)
        await _upsert(
            page_store,
            "old",
            generated_at=now - timedelta(hours=3),
            ttl_expires_at=now - timedelta(hours=1),
        )
        page = await page_store.get("old")
        assert page is not None
        assert page.stale is True

    async def test_stale_pages_ordered_by_views(self, page_store: PageStore, seed_page) -> None:
        await seed_page("five", view_count=5, stale=True)
        await seed_page("fifty", view_count=50, stale=True)
        await seed_page("one", view_count=1, stale=True)
        await seed_page("fresh", view_count=500)

        stale = await page_store.get_stale_pages(limit=10)
        assert [p.view_count for p in stale] == [50, 5, 1]

    async def test_stale_pages_respects_limit(self, page_store: PageStore, seed_page) -> None:
        for i in range(5):
            await seed_page(f"page-{i}", view_count=i, stale=True)
        stale = await page_store.get_stale_pages(limit=2)
        assert [p.slug for p in stale] == ["page-4", "page-3"]


class TestCounters:
    async def test_increment_view(self, page_store: PageStore, seed_page) -> None:
        await seed_page("teething", view_count=1)
        await page_store.increment_view("teething")
        page = await page_store.get("teething")
        assert page is not None
        assert page.view_count == 2
        assert page.last_viewed_at is not None

    async def test_mark_regenerated(self, page_store: PageStore, seed_page) -> None:
        await seed_page("teething")
        await page_store.mark_regenerated("teething")
        await page_store.mark_regenerated("teething")
        page = await page_store.get("teething")
        assert page is not None
        assert page.regeneration_count == 2
        assert page.last_regenerated_at is not None


class TestDeletion:
    async def test_delete_reports_whether_row_existed(
        self, page_store: PageStore, seed_page
    ) -> None:
        await seed_page("teething")
        assert await page_store.delete("teething") is True
        assert await page_store.delete("teething") is False

    async def test_delete_all_returns_count(self, page_store: PageStore, seed_page) -> None:
        await seed_page("a")
        await seed_page("b")
        assert await page_store.delete_all() == 2
        assert await page_store.list_slugs() == []

    async def test_delete_stale(self, page_store: PageStore, seed_page) -> None:
        await seed_page("old", stale=True)
        await seed_page("fresh")
        assert await page_store.delete_stale(datetime.now(UTC)) == ["old"]
        assert await page_store.list_slugs() == ["fresh"]

    async def test_delete_below_confidence(self, page_store: PageStore, seed_page) -> None:
        await seed_page("low", confidence=0.2)
        await seed_page("high", confidence=0.6)
        await seed_page("edge", confidence=0.5)
        deleted = await page_store.delete_below_confidence(0.5)
        assert deleted == ["low"]


class TestListings:
    async def test_popular_pages_excludes_unpublished(
        self, page_store: PageStore, seed_page
    ) -> None:
        await seed_page("a", view_count=10)
        await seed_page("b", view_count=20)
        await page_store.set_published("b", False)
        popular = await page_store.get_popular_pages(limit=5)
        assert [p.slug for p in popular] == ["a"]

    async def test_low_confidence_pages(self, page_store: PageStore, seed_page) -> None:
        await seed_page("a", confidence=0.1)
        await seed_page("b", confidence=0.3)
        await seed_page("c", confidence=0.9)
        low = await page_store.get_low_confidence_pages(0.4)
        assert [p.slug for p in low] == ["a", "b"]

    async def test_search_matches_title_and_content(
        self, page_store: PageStore, seed_page
    ) -> None:
        await seed_page("sleep-training")
        await seed_page("teething")
        assert await page_store.search("Sleep") == ["sleep-training"]

    async def test_find_by_source(self, page_store: PageStore, seed_page) -> None:
        await seed_page("a", sources=["doc-1", "doc-2"])
        await seed_page("b", sources=["doc-2"])
        await seed_page("c", sources=["doc-3"])
        assert sorted(await page_store.find_by_source("doc-2")) == ["a", "b"]

    async def test_stats(self, page_store: PageStore, seed_page) -> None:
        await seed_page("a", confidence=0.2, view_count=3, stale=True)
        await seed_page("b", confidence=0.8, view_count=7)
        await page_store.set_published("a", False)
        await page_store.mark_regenerated("b")

        stats = await page_store.get_stats(low_confidence_threshold=0.4)
        assert stats.total_pages == 2
        assert stats.published_pages == 1
        assert stats.stale_pages == 1
        assert stats.total_views == 10
        assert stats.avg_confidence == pytest.approx(0.5)
        assert stats.regenerated_pages == 1
        assert stats.low_confidence_pages == 1

    async def test_stats_on_empty_store(self, page_store: PageStore) -> None:
        stats = await page_store.get_stats(low_confidence_threshold=0.4)
        assert stats.total_pages == 0
        assert stats.avg_confidence == 0


class TestMetadata:
    async def test_meta_round_trip(self, page_store: PageStore) -> None:
        assert await page_store.get_meta("last_cleanup_at") is None
        await page_store.set_meta("last_cleanup_at", "2026-01-01T00:00:00+00:00")
        assert await page_store.get_meta("last_cleanup_at") == "2026-01-01T00:00:00+00:00"


class TestErrorHandling:
    async def test_read_failure_raises_store_error(
        self, page_store: PageStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _broken_execute(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(page_store._db, "execute", _broken_execute)
        with pytest.raises(StoreError, match="disk I/O error"):
            await page_store.get("teething")

    async def test_write_failure_raises_store_error(
        self, page_store: PageStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _broken_execute(*args, **kwargs):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(page_store._db, "execute", _broken_execute)
        with pytest.raises(StoreError):
            await _upsert(page_store, "teething")
