"""SQLite page store.

Pages are keyed by slug and updated in place. ``view_count`` is never
overwritten by an upsert: the stored value becomes ``max(existing, supplied)``
so a regeneration can only carry popularity forward, never reset it.

Unlike a read-through cache, persistence failures here are not swallowed:
every ``aiosqlite.Error`` is logged and re-raised as ``StoreError``.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from almanac.db import parse_timestamp, store_errors, to_timestamp
from almanac.errors import StoreError
from almanac.models.page import CachedPage, PageMetadata, PageSummary, StoreStats

if TYPE_CHECKING:
    from collections.abc import Sequence

    import aiosqlite

_CREATE_PAGES_TABLE = """
CREATE TABLE IF NOT EXISTS pages (
    slug                TEXT PRIMARY KEY,
    title               TEXT NOT NULL,
    content             TEXT NOT NULL,
    excerpt             TEXT,
    confidence_score    REAL NOT NULL CHECK (confidence_score >= 0 AND confidence_score <= 1),
    generated_at        TEXT NOT NULL,
    ttl_expires_at      TEXT NOT NULL,
    view_count          INTEGER NOT NULL DEFAULT 0,
    published           INTEGER NOT NULL DEFAULT 1,
    metadata            TEXT NOT NULL DEFAULT '{}',
    regeneration_count  INTEGER NOT NULL DEFAULT 0,
    last_regenerated_at TEXT,
    last_viewed_at      TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
)
"""

_CREATE_TTL_INDEX = "CREATE INDEX IF NOT EXISTS idx_pages_ttl ON pages(ttl_expires_at)"
_CREATE_VIEWS_INDEX = "CREATE INDEX IF NOT EXISTS idx_pages_views ON pages(view_count DESC)"
_CREATE_CONFIDENCE_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_pages_confidence ON pages(confidence_score)"
)

_CREATE_METADATA_TABLE = """
CREATE TABLE IF NOT EXISTS server_metadata (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
"""

_PAGE_COLUMNS = (
    "slug",
    "title",
    "content",
    "excerpt",
    "confidence_score",
    "generated_at",
    "ttl_expires_at",
    "view_count",
    "published",
    "metadata",
    "regeneration_count",
    "last_regenerated_at",
    "last_viewed_at",
    "created_at",
    "updated_at",
)
_SELECT_PAGE = f"SELECT {', '.join(_PAGE_COLUMNS)} FROM pages"


def _page_errors(operation: str, **context: object):
    return store_errors("page store", operation, **context)


def _row_to_page(row: Sequence, now: datetime) -> CachedPage:
    data = dict(zip(_PAGE_COLUMNS, row, strict=True))
    ttl_expires_at = datetime.fromisoformat(data["ttl_expires_at"])
    return CachedPage(
        slug=data["slug"],
        title=data["title"],
        content=data["content"],
        excerpt=data["excerpt"],
        confidence_score=data["confidence_score"],
        generated_at=datetime.fromisoformat(data["generated_at"]),
        ttl_expires_at=ttl_expires_at,
        view_count=data["view_count"],
        published=bool(data["published"]),
        metadata=PageMetadata.model_validate(json.loads(data["metadata"])),
        regeneration_count=data["regeneration_count"],
        last_regenerated_at=parse_timestamp(data["last_regenerated_at"]),
        last_viewed_at=parse_timestamp(data["last_viewed_at"]),
        created_at=parse_timestamp(data["created_at"]),
        updated_at=parse_timestamp(data["updated_at"]),
        stale=now > ttl_expires_at,
    )


class PageStore:
    """SQLite-backed store of generated pages implementing PageStoreProtocol."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        with _page_errors("init"):
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute(_CREATE_PAGES_TABLE)
            await self._db.execute(_CREATE_TTL_INDEX)
            await self._db.execute(_CREATE_VIEWS_INDEX)
            await self._db.execute(_CREATE_CONFIDENCE_INDEX)
            await self._db.execute(_CREATE_METADATA_TABLE)
            await self._db.commit()

    # ------------------------------------------------------------------
    # Single-page access
    # ------------------------------------------------------------------

    async def get(self, slug: str) -> CachedPage | None:
        with _page_errors("get", slug=slug):
            cursor = await self._db.execute(f"{_SELECT_PAGE} WHERE slug = ?", (slug,))
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_page(row, datetime.now(UTC))

    async def exists(self, slug: str) -> bool:
        with _page_errors("exists", slug=slug):
            cursor = await self._db.execute("SELECT 1 FROM pages WHERE slug = ?", (slug,))
            return await cursor.fetchone() is not None

    async def upsert(
        self,
        slug: str,
        *,
        title: str,
        content: str,
        excerpt: str | None,
        confidence_score: float,
        generated_at: datetime,
        ttl_expires_at: datetime,
        published: bool,
        metadata: PageMetadata,
        view_count: int = 0,
    ) -> CachedPage:
        """Insert or update a page in place and return the stored row."""
        if ttl_expires_at <= generated_at:
            raise ValueError("ttl_expires_at must be later than generated_at")
        now = to_timestamp(datetime.now(UTC))
        with _page_errors("upsert", slug=slug):
            await self._db.execute(
                "INSERT INTO pages (slug, title, content, excerpt, confidence_score, "
                "generated_at, ttl_expires_at, view_count, published, metadata, "
                "created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(slug) DO UPDATE SET "
                "title = excluded.title, "
                "content = excluded.content, "
                "excerpt = excluded.excerpt, "
                "confidence_score = excluded.confidence_score, "
                "generated_at = excluded.generated_at, "
                "ttl_expires_at = excluded.ttl_expires_at, "
                "view_count = MAX(pages.view_count, excluded.view_count), "
                "published = excluded.published, "
                "metadata = excluded.metadata, "
                "updated_at = excluded.updated_at",
                (
                    slug,
                    title,
                    content,
                    excerpt,
                    confidence_score,
                    to_timestamp(generated_at),
                    to_timestamp(ttl_expires_at),
                    view_count,
                    int(published),
                    metadata.model_dump_json(),
                    now,
                    now,
                ),
            )
            await self._db.commit()
        page = await self.get(slug)
        if page is None:
            raise StoreError(f"Page '{slug}' vanished immediately after upsert")
        return page

    async def increment_view(self, slug: str) -> None:
        with _page_errors("increment_view", slug=slug):
            await self._db.execute(
                "UPDATE pages SET view_count = view_count + 1, last_viewed_at = ? "
                "WHERE slug = ?",
                (to_timestamp(datetime.now(UTC)), slug),
            )
            await self._db.commit()

    async def mark_regenerated(self, slug: str) -> None:
        """Bump regeneration bookkeeping used when choosing future candidates."""
        with _page_errors("mark_regenerated", slug=slug):
            await self._db.execute(
                "UPDATE pages SET regeneration_count = regeneration_count + 1, "
                "last_regenerated_at = ? WHERE slug = ?",
                (to_timestamp(datetime.now(UTC)), slug),
            )
            await self._db.commit()

    async def set_published(self, slug: str, published: bool) -> bool:
        with _page_errors("set_published", slug=slug):
            cursor = await self._db.execute(
                "UPDATE pages SET published = ?, updated_at = ? WHERE slug = ?",
                (int(published), to_timestamp(datetime.now(UTC)), slug),
            )
            await self._db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete(self, slug: str) -> bool:
        """Delete one page. Returns False when it did not exist."""
        with _page_errors("delete", slug=slug):
            cursor = await self._db.execute("DELETE FROM pages WHERE slug = ?", (slug,))
            await self._db.commit()
            return cursor.rowcount > 0

    async def delete_all(self) -> int:
        return len(await self._delete_where("1 = 1", ()))

    async def delete_stale(self, now: datetime) -> list[str]:
        """Delete every page whose TTL elapsed before ``now``."""
        return await self._delete_where("ttl_expires_at < ?", (to_timestamp(now),))

    async def delete_below_confidence(self, threshold: float) -> list[str]:
        return await self._delete_where("confidence_score < ?", (threshold,))

    async def _delete_where(self, clause: str, params: tuple) -> list[str]:
        with _page_errors("delete_many", clause=clause):
            cursor = await self._db.execute(f"SELECT slug FROM pages WHERE {clause}", params)
            slugs = [row[0] for row in await cursor.fetchall()]
            if slugs:
                await self._db.execute(f"DELETE FROM pages WHERE {clause}", params)
                await self._db.commit()
        return slugs

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def get_stale_pages(self, limit: int) -> list[CachedPage]:
        """Stale pages, most viewed first. The regeneration priority order."""
        now = datetime.now(UTC)
        with _page_errors("get_stale_pages"):
            cursor = await self._db.execute(
                f"{_SELECT_PAGE} WHERE ttl_expires_at < ? "
                "ORDER BY view_count DESC, ttl_expires_at ASC LIMIT ?",
                (to_timestamp(now), limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_page(row, now) for row in rows]

    async def get_popular_pages(self, limit: int = 10) -> list[PageSummary]:
        with _page_errors("get_popular_pages"):
            cursor = await self._db.execute(
                "SELECT slug, title, view_count, confidence_score, ttl_expires_at FROM pages "
                "WHERE published = 1 ORDER BY view_count DESC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [_row_to_summary(row) for row in rows]

    async def get_low_confidence_pages(
        self, threshold: float, limit: int = 10
    ) -> list[PageSummary]:
        with _page_errors("get_low_confidence_pages"):
            cursor = await self._db.execute(
                "SELECT slug, title, view_count, confidence_score, ttl_expires_at FROM pages "
                "WHERE confidence_score < ? ORDER BY confidence_score ASC LIMIT ?",
                (threshold, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_summary(row) for row in rows]

    async def search(self, query: str, limit: int = 20) -> list[str]:
        """Slugs of pages whose title or content contains ``query``."""
        pattern = f"%{query}%"
        with _page_errors("search"):
            cursor = await self._db.execute(
                "SELECT slug FROM pages WHERE title LIKE ? OR content LIKE ? "
                "ORDER BY view_count DESC LIMIT ?",
                (pattern, pattern, limit),
            )
            return [row[0] for row in await cursor.fetchall()]

    async def find_by_source(self, document_id: str) -> list[str]:
        """Slugs of pages generated from the given source document."""
        with _page_errors("find_by_source", document_id=document_id):
            cursor = await self._db.execute(
                "SELECT pages.slug FROM pages, json_each(pages.metadata, '$.sources_used') "
                "WHERE json_each.value = ?",
                (document_id,),
            )
            return [row[0] for row in await cursor.fetchall()]

    async def list_slugs(self) -> list[str]:
        with _page_errors("list_slugs"):
            cursor = await self._db.execute("SELECT slug FROM pages ORDER BY slug")
            return [row[0] for row in await cursor.fetchall()]

    async def get_stats(self, low_confidence_threshold: float) -> StoreStats:
        now = to_timestamp(datetime.now(UTC))
        with _page_errors("get_stats"):
            cursor = await self._db.execute(
                "SELECT COUNT(*), "
                "COALESCE(SUM(published), 0), "
                "COALESCE(SUM(CASE WHEN ttl_expires_at < ? THEN 1 ELSE 0 END), 0), "
                "COALESCE(AVG(confidence_score), 0), "
                "COALESCE(SUM(view_count), 0), "
                "COALESCE(SUM(CASE WHEN regeneration_count > 0 THEN 1 ELSE 0 END), 0), "
                "COALESCE(SUM(CASE WHEN confidence_score < ? THEN 1 ELSE 0 END), 0) "
                "FROM pages",
                (now, low_confidence_threshold),
            )
            row = await cursor.fetchone()
        if row is None:
            raise StoreError("Page statistics query returned no row")
        return StoreStats(
            total_pages=row[0],
            published_pages=row[1],
            stale_pages=row[2],
            avg_confidence=row[3],
            total_views=row[4],
            regenerated_pages=row[5],
            low_confidence_pages=row[6],
        )

    # ------------------------------------------------------------------
    # Server metadata
    # ------------------------------------------------------------------

    async def get_meta(self, key: str) -> str | None:
        with _page_errors("get_meta", key=key):
            cursor = await self._db.execute(
                "SELECT value FROM server_metadata WHERE key = ?", (key,)
            )
            row = await cursor.fetchone()
        return row[0] if row is not None else None

    async def set_meta(self, key: str, value: str) -> None:
        with _page_errors("set_meta", key=key):
            await self._db.execute(
                "INSERT OR REPLACE INTO server_metadata (key, value) VALUES (?, ?)",
                (key, value),
            )
            await self._db.commit()


def _row_to_summary(row: Sequence) -> PageSummary:
    return PageSummary(
        slug=row[0],
        title=row[1],
        views=row[2],
        confidence=row[3],
        expires_at=datetime.fromisoformat(row[4]),
    )
