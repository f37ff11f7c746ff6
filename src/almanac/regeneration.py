"""Batch regeneration of stale pages.

One run selects up to ``batch_size`` stale pages, most viewed first, and
rebuilds them one at a time with ``delay_ms`` between items. A failed item is
recorded and the batch moves on; only a failure to select candidates fails
the run as a whole.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from almanac.errors import AlmanacError
from almanac.models.jobs import RegenerationResult, RegenerationSummary

if TYPE_CHECKING:
    from almanac.config import RegenerationSettings
    from almanac.inflight import InFlightTracker
    from almanac.models.page import CachedPage
    from almanac.protocols import PageStoreProtocol
    from almanac.refresh import PageRefresher

log = structlog.get_logger()

STALE_REASON = "stale_ttl"


class RegenerationScheduler:
    def __init__(
        self,
        pages: PageStoreProtocol,
        refresher: PageRefresher,
        inflight: InFlightTracker,
        settings: RegenerationSettings,
    ) -> None:
        self._pages = pages
        self._refresher = refresher
        self._inflight = inflight
        self._settings = settings

    async def select_candidates(self) -> list[CachedPage]:
        """Stale pages ordered by ``view_count`` descending, one per slug."""
        pages = await self._pages.get_stale_pages(self._settings.batch_size)
        seen: set[str] = set()
        candidates = []
        for page in pages:
            if page.slug not in seen:
                seen.add(page.slug)
                candidates.append(page)
        return candidates

    async def run(self) -> RegenerationSummary:
        start = time.monotonic()
        candidates = await self.select_candidates()
        log.info("regeneration_run_started", candidates=len(candidates))

        results: list[RegenerationResult] = []
        for index, page in enumerate(candidates):
            result = await self._regenerate_candidate(page)
            results.append(result)
            if (
                index < len(candidates) - 1
                and result.status != "skipped"
                and self._settings.delay_ms
            ):
                await asyncio.sleep(self._settings.delay_ms / 1000)

        summary = RegenerationSummary(
            total=len(results),
            success=sum(1 for r in results if r.status == "success"),
            skipped=sum(1 for r in results if r.status == "skipped"),
            failed=sum(1 for r in results if r.status == "error"),
            duration_ms=int((time.monotonic() - start) * 1000),
            results=results,
            timestamp=datetime.now(UTC),
        )
        log.info(
            "regeneration_run_complete",
            total=summary.total,
            success=summary.success,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_ms=summary.duration_ms,
        )
        return summary

    async def regenerate_one(self, slug: str, reason: str = "manual") -> CachedPage:
        """Force-regenerate ``slug`` outside the batch.

        Raises ``RegenerationInProgressError`` if the slug is already being
        regenerated. Every other error propagates to the caller.
        """
        async with self._inflight.claim(slug):
            previous = await self._pages.get(slug)
            page = await self._refresher.refresh(
                slug,
                previous=previous,
                extra_metadata=self._tags(previous, reason),
            )
            await self._pages.mark_regenerated(slug)
        log.info("page_force_regenerated", slug=slug, reason=reason)
        return page

    async def _regenerate_candidate(self, page: CachedPage) -> RegenerationResult:
        slug = page.slug
        if not await self._inflight.try_claim(slug):
            log.info("regeneration_skipped", slug=slug, reason="in_flight")
            return RegenerationResult(slug=slug, status="skipped", previous_views=page.view_count)

        item_start = time.monotonic()
        try:
            fresh = await self._refresher.refresh(
                slug,
                previous=page,
                extra_metadata=self._tags(page, STALE_REASON),
            )
            await self._pages.mark_regenerated(slug)
        except AlmanacError as exc:
            log.warning("regeneration_item_failed", slug=slug, error=exc.message)
            return RegenerationResult(
                slug=slug,
                status="error",
                error=exc.message,
                duration_ms=int((time.monotonic() - item_start) * 1000),
                previous_views=page.view_count,
            )
        finally:
            await self._inflight.release(slug)

        return RegenerationResult(
            slug=slug,
            status="success",
            confidence_score=fresh.confidence_score,
            duration_ms=int((time.monotonic() - item_start) * 1000),
            previous_views=page.view_count,
        )

    @staticmethod
    def _tags(previous: CachedPage | None, reason: str) -> dict[str, object]:
        tags: dict[str, object] = {
            "regenerated_at": datetime.now(UTC).isoformat(),
            "regeneration_reason": reason,
        }
        if previous is not None:
            tags["previous_confidence"] = previous.confidence_score
        return tags
