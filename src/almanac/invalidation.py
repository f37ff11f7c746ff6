"""Cache invalidation.

Every operation is idempotent: deleting an absent page is a successful no-op.
Deleting a page also deletes the edges leaving it, but edges pointing *to* it
are kept so backlink history survives a regeneration cycle.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from almanac.errors import AlmanacError
from almanac.models.jobs import BatchInvalidation, CleanupSummary, InvalidationResult

if TYPE_CHECKING:
    from collections.abc import Iterable

    from almanac.protocols import LinkStoreProtocol, PageStoreProtocol
    from almanac.stats import RuntimeStats

log = structlog.get_logger()

_LAST_CLEANUP_KEY = "last_cleanup_at"


class InvalidationManager:
    def __init__(
        self,
        pages: PageStoreProtocol,
        links: LinkStoreProtocol,
        stats: RuntimeStats,
    ) -> None:
        self._pages = pages
        self._links = links
        self._stats = stats

    async def invalidate_one(self, slug: str) -> InvalidationResult:
        deleted = await self._pages.delete(slug)
        if deleted:
            await self._after_delete([slug])
        else:
            log.debug("invalidate_noop", slug=slug)
        return InvalidationResult(slug=slug, deleted=deleted)

    async def invalidate_many(self, slugs: Iterable[str]) -> BatchInvalidation:
        """Invalidate each slug independently; one failure does not stop the rest."""
        outcome = BatchInvalidation()
        for slug in slugs:
            try:
                await self.invalidate_one(slug)
            except AlmanacError as exc:
                outcome.failed.append({"slug": slug, "error": exc.message})
            else:
                outcome.success.append(slug)
        return outcome

    async def invalidate_all(self) -> int:
        slugs = await self._pages.list_slugs()
        count = await self._pages.delete_all()
        await self._after_delete(slugs)
        log.warning("cache_cleared", deleted=count)
        return count

    async def invalidate_stale(self, *, grace: timedelta = timedelta(0)) -> int:
        """Delete pages whose TTL elapsed more than ``grace`` ago."""
        deleted = await self._pages.delete_stale(datetime.now(UTC) - grace)
        await self._after_delete(deleted)
        log.info("stale_pages_invalidated", deleted=len(deleted))
        return len(deleted)

    async def invalidate_low_confidence(self, threshold: float) -> int:
        deleted = await self._pages.delete_below_confidence(threshold)
        await self._after_delete(deleted)
        log.info("low_confidence_pages_invalidated", threshold=threshold, deleted=len(deleted))
        return len(deleted)

    async def invalidate_by_source(self, document_id: str) -> list[str]:
        """Invalidate every page generated from ``document_id``.

        Used when a source document changes so its derived pages get rebuilt.
        """
        slugs = await self._pages.find_by_source(document_id)
        outcome = await self.invalidate_many(slugs)
        log.info(
            "source_pages_invalidated",
            document_id=document_id,
            deleted=len(outcome.success),
            failed=len(outcome.failed),
        )
        return outcome.success

    async def soft_invalidate(self, slug: str) -> bool:
        """Hide a page from readers without deleting it."""
        changed = await self._pages.set_published(slug, False)
        if changed:
            log.info("page_unpublished", slug=slug)
        return changed

    async def restore(self, slug: str) -> bool:
        changed = await self._pages.set_published(slug, True)
        if changed:
            log.info("page_republished", slug=slug)
        return changed

    async def cleanup(self, threshold: float | None = None) -> CleanupSummary:
        """Drop stale pages, and low-confidence ones when ``threshold`` is given."""
        summary = CleanupSummary(stale_pages=await self.invalidate_stale())
        if threshold is not None:
            summary.low_confidence_pages = await self.invalidate_low_confidence(threshold)
        return summary

    async def cleanup_if_due(self, interval_hours: int, *, grace: timedelta) -> bool:
        """Run periodic cleanup only if ``interval_hours`` elapsed since the last run.

        Reads and writes ``last_cleanup_at`` in ``server_metadata``. Returns
        True when cleanup actually ran.
        """
        last = await self._pages.get_meta(_LAST_CLEANUP_KEY)
        if last is not None:
            last_run = datetime.fromisoformat(last)
            if datetime.now(UTC) - last_run < timedelta(hours=interval_hours):
                log.debug("cache_cleanup_skipped", reason="not_due")
                return False

        deleted = await self.invalidate_stale(grace=grace)
        synced = await self._links.sync_page_exists()
        await self._pages.set_meta(_LAST_CLEANUP_KEY, datetime.now(UTC).isoformat())
        log.info("cache_cleanup_complete", pages_deleted=deleted, candidates_synced=synced)
        return True

    async def _after_delete(self, slugs: Iterable[str]) -> None:
        for slug in slugs:
            edges = await self._links.delete_outgoing(slug)
            self._stats.record_invalidation(slug)
            if edges:
                log.debug("outgoing_edges_deleted", slug=slug, edges=edges)
