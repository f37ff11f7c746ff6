"""Protocol interfaces for swappable components.

Services and AppState reference these protocols, not the concrete SQLite
stores or HTTP providers, so tests can substitute in-memory fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from datetime import datetime

    from almanac.models.graph import (
        Backlink,
        CandidateStats,
        ConnectedPage,
        LinkCandidate,
        LinkConfidence,
        OrphanedPage,
        OutgoingLink,
        RelatedPage,
    )
    from almanac.models.page import (
        CachedPage,
        GenerationResult,
        PageMetadata,
        PageSummary,
        StoreStats,
    )


class PageStoreProtocol(Protocol):
    """Interface for durable page storage."""

    async def get(self, slug: str) -> CachedPage | None: ...

    async def exists(self, slug: str) -> bool: ...

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
    ) -> CachedPage: ...

    async def increment_view(self, slug: str) -> None: ...

    async def mark_regenerated(self, slug: str) -> None: ...

    async def set_published(self, slug: str, published: bool) -> bool: ...

    async def delete(self, slug: str) -> bool: ...

    async def delete_all(self) -> int: ...

    async def delete_stale(self, now: datetime) -> list[str]: ...

    async def delete_below_confidence(self, threshold: float) -> list[str]: ...

    async def get_stale_pages(self, limit: int) -> list[CachedPage]: ...

    async def get_popular_pages(self, limit: int = 10) -> list[PageSummary]: ...

    async def get_low_confidence_pages(
        self, threshold: float, limit: int = 10
    ) -> list[PageSummary]: ...

    async def list_slugs(self) -> list[str]: ...

    async def search(self, query: str, limit: int = 20) -> list[str]: ...

    async def find_by_source(self, document_id: str) -> list[str]: ...

    async def get_stats(self, low_confidence_threshold: float) -> StoreStats: ...

    async def get_meta(self, key: str) -> str | None: ...

    async def set_meta(self, key: str, value: str) -> None: ...


class LinkStoreProtocol(Protocol):
    """Interface for link candidates and page connections."""

    async def upsert_candidate(
        self,
        entity: str,
        normalized_slug: str,
        confidence: LinkConfidence,
        *,
        page_exists: bool = False,
    ) -> LinkCandidate: ...

    async def get_candidate(self, normalized_slug: str) -> LinkCandidate | None: ...

    async def set_page_exists(self, normalized_slug: str, page_exists: bool = True) -> None: ...

    async def get_suggested(self, limit: int = 20) -> list[LinkCandidate]: ...

    async def candidate_stats(self) -> CandidateStats: ...

    async def sync_page_exists(self) -> int: ...

    async def upsert_connection(
        self, from_slug: str, to_slug: str, link_text: str, strength: float
    ) -> None: ...

    async def delete_outgoing(self, slug: str) -> int: ...

    async def get_outgoing(self, slug: str) -> list[OutgoingLink]: ...

    async def get_incoming(self, slug: str, limit: int = 20) -> list[Backlink]: ...

    async def get_related(self, slug: str, limit: int = 10) -> list[RelatedPage]: ...

    async def count_pages(self) -> int: ...

    async def count_connections(self) -> int: ...

    async def top_incoming(self, limit: int = 10) -> list[ConnectedPage]: ...

    async def orphaned_pages(self) -> list[OrphanedPage]: ...


class GenerationProvider(Protocol):
    """One backend capable of turning a query into a page."""

    name: str

    async def generate(self, query: str) -> GenerationResult: ...
