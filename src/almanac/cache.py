"""Page cache read path and TTL policy.

``CacheService.get`` never refuses a stale page: it reports staleness and
leaves the serve-stale-while-revalidating decision to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from almanac.models.page import PageMetadata

if TYPE_CHECKING:
    from almanac.config import CacheSettings
    from almanac.models.page import CachedPage, GenerationResult, StoreStats
    from almanac.protocols import PageStoreProtocol
    from almanac.stats import RuntimeStats

log = structlog.get_logger()


@dataclass(frozen=True)
class CacheLookup:
    page: CachedPage | None
    stale: bool = False

    @property
    def hit(self) -> bool:
        return self.page is not None


class CacheService:
    def __init__(
        self,
        pages: PageStoreProtocol,
        stats: RuntimeStats,
        settings: CacheSettings,
    ) -> None:
        self._pages = pages
        self._stats = stats
        self._settings = settings

    async def get(self, slug: str) -> CacheLookup:
        """Fetch a page, counting a hit or a miss.

        A hit also increments the page's view count. The returned page carries
        the view count as it was before this read.
        """
        page = await self._pages.get(slug)
        if page is None:
            self._stats.record_miss(slug)
            return CacheLookup(page=None)

        self._stats.record_hit(slug)
        await self._pages.increment_view(slug)
        stale = self.is_stale(page)
        if stale:
            log.debug("cache_hit_stale", slug=slug, expired_at=page.ttl_expires_at.isoformat())
        return CacheLookup(page=page, stale=stale)

    async def put(
        self,
        slug: str,
        result: GenerationResult,
        *,
        view_count: int | None = None,
        extra_metadata: dict[str, object] | None = None,
        generated_at: datetime | None = None,
    ) -> CachedPage:
        """Store a generation result under ``slug``.

        The TTL tier and the publish decision are derived from the result's
        confidence. ``view_count`` is a floor; the store never lowers the
        count already recorded for the slug.
        """
        generated_at = generated_at or datetime.now(UTC)
        metadata = result.metadata
        if extra_metadata:
            metadata = PageMetadata.model_validate(
                {**result.metadata.model_dump(), **extra_metadata}
            )
        published = result.published
        if published is None:
            published = result.confidence_score >= self._settings.min_publish_confidence

        page = await self._pages.upsert(
            slug,
            title=result.title,
            content=result.content,
            excerpt=result.excerpt,
            confidence_score=result.confidence_score,
            generated_at=generated_at,
            ttl_expires_at=generated_at + self.ttl_for(result.confidence_score),
            published=published,
            metadata=metadata,
            view_count=view_count or 0,
        )
        log.info(
            "page_cached",
            slug=slug,
            confidence=result.confidence_score,
            published=published,
            expires_at=page.ttl_expires_at.isoformat(),
        )
        return page

    def ttl_for(self, confidence_score: float) -> timedelta:
        if confidence_score >= self._settings.low_confidence_threshold:
            return timedelta(hours=self._settings.ttl_hours)
        return timedelta(hours=self._settings.low_confidence_ttl_hours)

    @staticmethod
    def is_stale(page: CachedPage, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) > page.ttl_expires_at

    def is_low_confidence(self, page: CachedPage) -> bool:
        return page.confidence_score < self._settings.low_confidence_threshold

    async def get_stats(self) -> StoreStats:
        return await self._pages.get_stats(self._settings.low_confidence_threshold)

    def record_regeneration(self, slug: str, *, duration_ms: int | None = None) -> None:
        self._stats.record_regeneration(slug, duration_ms=duration_ms)

    def record_error(self, slug: str, message: str) -> None:
        self._stats.record_error(slug, message)
