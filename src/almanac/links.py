"""SQLite entity/link store: link candidates and directed page connections.

Shares its connection with ``PageStore`` so that ``page_exists`` can be
computed against the ``pages`` table at query time rather than trusted from
the value written when the entity was last observed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from almanac.db import store_errors, to_timestamp
from almanac.errors import StoreError
from almanac.models.graph import (
    Backlink,
    CandidateStats,
    ConnectedPage,
    LinkCandidate,
    OrphanedPage,
    OutgoingLink,
    RelatedPage,
)
from almanac.slugs import slug_to_title

if TYPE_CHECKING:
    import aiosqlite

    from almanac.models.graph import LinkConfidence

_CREATE_CANDIDATES_TABLE = """
CREATE TABLE IF NOT EXISTS link_candidates (
    normalized_slug TEXT PRIMARY KEY,
    entity          TEXT NOT NULL,
    confidence      TEXT NOT NULL CHECK (confidence IN ('strong', 'weak', 'ghost')),
    mentioned_count INTEGER NOT NULL DEFAULT 1 CHECK (mentioned_count >= 1),
    page_exists     INTEGER NOT NULL DEFAULT 0,
    first_seen_at   TEXT NOT NULL,
    last_seen_at    TEXT NOT NULL
)
"""

_CREATE_CANDIDATES_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_candidates_mentions "
    "ON link_candidates(mentioned_count DESC)"
)

_CREATE_CONNECTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS page_connections (
    from_slug  TEXT NOT NULL,
    to_slug    TEXT NOT NULL,
    link_text  TEXT NOT NULL,
    strength   REAL NOT NULL CHECK (strength >= 0 AND strength <= 1),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (from_slug, to_slug),
    CHECK (from_slug <> to_slug)
)
"""

_CREATE_CONNECTIONS_TO_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_connections_to ON page_connections(to_slug)"
)

_RANK = "CASE {col} WHEN 'strong' THEN 3 WHEN 'weak' THEN 2 ELSE 1 END"

_PAGE_EXISTS = "EXISTS (SELECT 1 FROM pages p WHERE p.slug = c.normalized_slug)"

_SELECT_CANDIDATE = (
    "SELECT c.entity, c.normalized_slug, c.confidence, c.mentioned_count, "
    f"{_PAGE_EXISTS}, c.first_seen_at, c.last_seen_at FROM link_candidates c"
)

_RELATED_QUERY = """
WITH edges AS (
    SELECT to_slug AS neighbour, link_text, strength, 'outgoing' AS direction
    FROM page_connections WHERE from_slug = :slug
    UNION ALL
    SELECT from_slug AS neighbour, link_text, strength, 'incoming' AS direction
    FROM page_connections WHERE to_slug = :slug
),
merged AS (
    SELECT neighbour,
           MAX(strength) AS strength,
           MAX(direction = 'outgoing') AS has_outgoing,
           MAX(direction = 'incoming') AS has_incoming,
           MAX(CASE WHEN direction = 'outgoing' THEN link_text END) AS link_text
    FROM edges GROUP BY neighbour
)
SELECT m.neighbour, p.title, m.link_text, m.strength, m.has_outgoing, m.has_incoming,
       COALESCE(c.mentioned_count, 0) AS mentions, p.slug IS NOT NULL
FROM merged m
LEFT JOIN pages p ON p.slug = m.neighbour
LEFT JOIN link_candidates c ON c.normalized_slug = m.neighbour
ORDER BY m.strength DESC, mentions DESC, m.neighbour ASC
LIMIT :limit
"""


def _link_errors(operation: str, **context: object):
    return store_errors("link store", operation, **context)


def _row_to_candidate(row: aiosqlite.Row | tuple) -> LinkCandidate:
    return LinkCandidate(
        entity=row[0],
        normalized_slug=row[1],
        confidence=row[2],
        mentioned_count=row[3],
        page_exists=bool(row[4]),
        first_seen_at=datetime.fromisoformat(row[5]),
        last_seen_at=datetime.fromisoformat(row[6]),
    )


def _direction(has_outgoing: int, has_incoming: int) -> str:
    if has_outgoing and has_incoming:
        return "bidirectional"
    return "outgoing" if has_outgoing else "incoming"


class LinkStore:
    """Link candidates plus the directed, weighted ``page_connections`` graph."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def init_db(self) -> None:
        """Create tables. Must run after ``PageStore.init_db`` on the same connection."""
        with _link_errors("init"):
            await self._db.execute(_CREATE_CANDIDATES_TABLE)
            await self._db.execute(_CREATE_CANDIDATES_INDEX)
            await self._db.execute(_CREATE_CONNECTIONS_TABLE)
            await self._db.execute(_CREATE_CONNECTIONS_TO_INDEX)
            await self._db.commit()

    # ------------------------------------------------------------------
    # Link candidates
    # ------------------------------------------------------------------

    async def upsert_candidate(
        self,
        entity: str,
        normalized_slug: str,
        confidence: LinkConfidence,
        *,
        page_exists: bool = False,
    ) -> LinkCandidate:
        """Record one observation of an entity.

        A new candidate starts at ``mentioned_count = 1``. A known one has its
        count incremented and ``last_seen_at`` bumped; its confidence only
        moves up the ghost < weak < strong ladder.
        """
        now = to_timestamp(datetime.now(UTC))
        with _link_errors("upsert_candidate", slug=normalized_slug):
            await self._db.execute(
                "INSERT INTO link_candidates (normalized_slug, entity, confidence, "
                "mentioned_count, page_exists, first_seen_at, last_seen_at) "
                "VALUES (?, ?, ?, 1, ?, ?, ?) "
                "ON CONFLICT(normalized_slug) DO UPDATE SET "
                "mentioned_count = link_candidates.mentioned_count + 1, "
                "last_seen_at = excluded.last_seen_at, "
                "page_exists = excluded.page_exists, "
                "confidence = CASE WHEN "
                f"{_RANK.format(col='excluded.confidence')} > "
                f"{_RANK.format(col='link_candidates.confidence')} "
                "THEN excluded.confidence ELSE link_candidates.confidence END",
                (normalized_slug, entity, confidence, int(page_exists), now, now),
            )
            await self._db.commit()
        candidate = await self.get_candidate(normalized_slug)
        if candidate is None:
            raise StoreError(f"Candidate '{normalized_slug}' vanished immediately after upsert")
        return candidate

    async def get_candidate(self, normalized_slug: str) -> LinkCandidate | None:
        with _link_errors("get_candidate", slug=normalized_slug):
            cursor = await self._db.execute(
                f"{_SELECT_CANDIDATE} WHERE c.normalized_slug = ?", (normalized_slug,)
            )
            row = await cursor.fetchone()
        return _row_to_candidate(row) if row is not None else None

    async def set_page_exists(self, normalized_slug: str, page_exists: bool = True) -> None:
        with _link_errors("set_page_exists", slug=normalized_slug):
            await self._db.execute(
                "UPDATE link_candidates SET page_exists = ? WHERE normalized_slug = ?",
                (int(page_exists), normalized_slug),
            )
            await self._db.commit()

    async def get_suggested(self, limit: int = 20) -> list[LinkCandidate]:
        """Candidates with no page yet, most mentioned first."""
        with _link_errors("get_suggested"):
            cursor = await self._db.execute(
                f"{_SELECT_CANDIDATE} WHERE NOT {_PAGE_EXISTS} "
                "ORDER BY c.mentioned_count DESC, c.last_seen_at DESC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [_row_to_candidate(row) for row in rows]

    async def candidate_stats(self) -> CandidateStats:
        with _link_errors("candidate_stats"):
            cursor = await self._db.execute(
                "SELECT COUNT(*), "
                f"COALESCE(SUM({_PAGE_EXISTS}), 0), "
                "COALESCE(SUM(c.confidence = 'strong'), 0), "
                "COALESCE(SUM(c.confidence = 'weak'), 0), "
                "COALESCE(SUM(c.confidence = 'ghost'), 0) "
                "FROM link_candidates c"
            )
            row = await cursor.fetchone()
        if row is None:
            raise StoreError("Candidate statistics query returned no row")
        return CandidateStats(
            total=row[0],
            with_pages=row[1],
            without_pages=row[0] - row[1],
            strong=row[2],
            weak=row[3],
            ghost=row[4],
        )

    async def sync_page_exists(self) -> int:
        """Rewrite the stored ``page_exists`` flags from the pages table.

        Returns the number of candidates whose flag changed.
        """
        exists = "EXISTS (SELECT 1 FROM pages p WHERE p.slug = link_candidates.normalized_slug)"
        with _link_errors("sync_page_exists"):
            cursor = await self._db.execute(
                f"UPDATE link_candidates SET page_exists = {exists} "
                f"WHERE page_exists <> {exists}"
            )
            await self._db.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def upsert_connection(
        self, from_slug: str, to_slug: str, link_text: str, strength: float
    ) -> None:
        if from_slug == to_slug:
            raise ValueError(f"Refusing to record a self-loop on '{from_slug}'")
        if not 0.0 <= strength <= 1.0:
            raise ValueError(f"strength must be within [0, 1], got {strength}")
        now = to_timestamp(datetime.now(UTC))
        with _link_errors("upsert_connection", from_slug=from_slug, to_slug=to_slug):
            await self._db.execute(
                "INSERT INTO page_connections "
                "(from_slug, to_slug, link_text, strength, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(from_slug, to_slug) DO UPDATE SET "
                "link_text = excluded.link_text, "
                "strength = excluded.strength, "
                "updated_at = excluded.updated_at",
                (from_slug, to_slug, link_text, strength, now, now),
            )
            await self._db.commit()

    async def delete_outgoing(self, slug: str) -> int:
        """Delete edges leaving ``slug``. Incoming edges are kept."""
        with _link_errors("delete_outgoing", slug=slug):
            cursor = await self._db.execute(
                "DELETE FROM page_connections WHERE from_slug = ?", (slug,)
            )
            await self._db.commit()
            return cursor.rowcount

    async def get_outgoing(self, slug: str) -> list[OutgoingLink]:
        with _link_errors("get_outgoing", slug=slug):
            cursor = await self._db.execute(
                "SELECT pc.to_slug, p.title, pc.link_text, pc.strength, p.slug IS NOT NULL "
                "FROM page_connections pc LEFT JOIN pages p ON p.slug = pc.to_slug "
                "WHERE pc.from_slug = ? ORDER BY pc.strength DESC, pc.to_slug ASC",
                (slug,),
            )
            rows = await cursor.fetchall()
        return [
            OutgoingLink(
                slug=row[0],
                title=row[1] or row[2],
                link_text=row[2],
                strength=row[3],
                page_exists=bool(row[4]),
            )
            for row in rows
        ]

    async def get_incoming(self, slug: str, limit: int = 20) -> list[Backlink]:
        with _link_errors("get_incoming", slug=slug):
            cursor = await self._db.execute(
                "SELECT pc.from_slug, p.title, pc.link_text, pc.strength "
                "FROM page_connections pc LEFT JOIN pages p ON p.slug = pc.from_slug "
                "WHERE pc.to_slug = ? ORDER BY pc.strength DESC, pc.from_slug ASC LIMIT ?",
                (slug, limit),
            )
            rows = await cursor.fetchall()
        return [
            Backlink(
                slug=row[0],
                title=row[1] or slug_to_title(row[0]),
                link_text=row[2],
                strength=row[3],
            )
            for row in rows
        ]

    async def get_related(self, slug: str, limit: int = 10) -> list[RelatedPage]:
        """Neighbours in either direction, strongest edge per neighbour."""
        with _link_errors("get_related", slug=slug):
            cursor = await self._db.execute(_RELATED_QUERY, {"slug": slug, "limit": limit})
            rows = await cursor.fetchall()
        return [
            RelatedPage(
                slug=row[0],
                title=row[1] or row[2] or slug_to_title(row[0]),
                strength=row[3],
                direction=_direction(row[4], row[5]),
                mentioned_count=row[6],
                page_exists=bool(row[7]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def count_pages(self) -> int:
        with _link_errors("count_pages"):
            cursor = await self._db.execute("SELECT COUNT(*) FROM pages")
            row = await cursor.fetchone()
        return row[0] if row is not None else 0

    async def count_connections(self) -> int:
        with _link_errors("count_connections"):
            cursor = await self._db.execute("SELECT COUNT(*) FROM page_connections")
            row = await cursor.fetchone()
        return row[0] if row is not None else 0

    async def top_incoming(self, limit: int = 10) -> list[ConnectedPage]:
        """Slugs with the most incoming edges."""
        with _link_errors("top_incoming"):
            cursor = await self._db.execute(
                "SELECT pc.to_slug, p.title, COUNT(*) AS incoming "
                "FROM page_connections pc LEFT JOIN pages p ON p.slug = pc.to_slug "
                "GROUP BY pc.to_slug ORDER BY incoming DESC, pc.to_slug ASC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [
            ConnectedPage(
                slug=row[0],
                title=row[1] or slug_to_title(row[0]),
                connection_count=row[2],
            )
            for row in rows
        ]

    async def orphaned_pages(self) -> list[OrphanedPage]:
        """Pages with no edge in either direction."""
        with _link_errors("orphaned_pages"):
            cursor = await self._db.execute(
                "SELECT p.slug, p.title FROM pages p "
                "WHERE NOT EXISTS (SELECT 1 FROM page_connections pc "
                "WHERE pc.from_slug = p.slug OR pc.to_slug = p.slug) "
                "ORDER BY p.slug"
            )
            rows = await cursor.fetchall()
        return [OrphanedPage(slug=row[0], title=row[1]) for row in rows]
