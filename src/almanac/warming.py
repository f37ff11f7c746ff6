"""Proactive cache population for a list of topics.

Best-effort and rate limited: each topic is processed independently, a
failure is recorded against that topic only, and a configurable delay
separates items. Fan-out is bounded by ``warming.concurrency`` (serial by
default).
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from almanac.errors import AlmanacError
from almanac.models.jobs import WarmingEstimate, WarmingResult, WarmingSummary
from almanac.slugs import query_to_slug

if TYPE_CHECKING:
    from collections.abc import Sequence

    from almanac.config import WarmingSettings
    from almanac.inflight import InFlightTracker
    from almanac.protocols import PageStoreProtocol
    from almanac.refresh import PageRefresher
    from almanac.stats import RuntimeStats

log = structlog.get_logger()

_DEFAULT_GENERATION_MS = 5000


class WarmingService:
    def __init__(
        self,
        pages: PageStoreProtocol,
        refresher: PageRefresher,
        inflight: InFlightTracker,
        stats: RuntimeStats,
        settings: WarmingSettings,
    ) -> None:
        self._pages = pages
        self._refresher = refresher
        self._inflight = inflight
        self._stats = stats
        self._settings = settings

    async def warm(
        self,
        topics: Sequence[str] | None = None,
        *,
        skip_existing: bool | None = None,
        max_topics: int | None = None,
    ) -> WarmingSummary:
        """Generate pages for ``topics`` (the configured list when omitted)."""
        if skip_existing is None:
            skip_existing = self._settings.skip_existing
        chosen = list(topics) if topics is not None else list(self._settings.topics)
        if max_topics is not None:
            chosen = chosen[:max_topics]

        # One item per slug; the first spelling of a topic wins.
        by_slug: dict[str, str] = {}
        for topic in chosen:
            slug = query_to_slug(topic)
            if slug:
                by_slug.setdefault(slug, topic)
        items = list(by_slug.items())

        log.info(
            "warming_started",
            topics=len(items),
            concurrency=self._settings.concurrency,
            skip_existing=skip_existing,
        )
        start = time.monotonic()
        semaphore = asyncio.Semaphore(self._settings.concurrency)
        last = len(items) - 1

        async def run(index: int, slug: str, topic: str) -> WarmingResult:
            async with semaphore:
                result = await self._warm_item(slug, topic, skip_existing=skip_existing)
                if index < last and result.status != "skipped" and self._settings.delay_ms:
                    await asyncio.sleep(self._settings.delay_ms / 1000)
                return result

        results = await asyncio.gather(
            *(run(i, slug, topic) for i, (slug, topic) in enumerate(items))
        )

        duration_ms = int((time.monotonic() - start) * 1000)
        summary = WarmingSummary(
            total=len(results),
            success=sum(1 for r in results if r.status == "success"),
            failed=sum(1 for r in results if r.status == "error"),
            skipped=sum(1 for r in results if r.status == "skipped"),
            duration_ms=duration_ms,
            avg_duration_ms=round(duration_ms / len(results)) if results else 0,
            results=list(results),
        )
        log.info(
            "warming_complete",
            total=summary.total,
            success=summary.success,
            failed=summary.failed,
            skipped=summary.skipped,
            duration_ms=duration_ms,
        )
        return summary

    async def warm_topic(self, topic: str) -> WarmingResult:
        """Warm a single topic, regenerating it even if a fresh page exists."""
        slug = query_to_slug(topic)
        return await self._warm_item(slug, topic, skip_existing=False)

    def estimate_duration(
        self,
        topic_count: int | None = None,
        avg_generation_ms: int = _DEFAULT_GENERATION_MS,
    ) -> WarmingEstimate:
        count = len(self._settings.topics) if topic_count is None else topic_count
        # Serial worst case; concurrency only shortens it.
        per_page_ms = avg_generation_ms + self._settings.delay_ms
        total_ms = count * per_page_ms // self._settings.concurrency
        return WarmingEstimate(
            topic_count=count,
            per_page_ms=per_page_ms,
            total_ms=total_ms,
            total_minutes=round(total_ms / 60000),
        )

    async def _warm_item(self, slug: str, topic: str, *, skip_existing: bool) -> WarmingResult:
        item_start = time.monotonic()
        try:
            existing = await self._pages.get(slug)
            if skip_existing and existing is not None and not existing.stale:
                log.debug("warming_skipped", slug=slug, reason="fresh")
                return WarmingResult(slug=slug, status="skipped")

            if not await self._inflight.try_claim(slug):
                log.info("warming_skipped", slug=slug, reason="in_flight")
                return WarmingResult(slug=slug, status="skipped")
            try:
                page = await self._refresher.refresh(
                    slug, query=topic, previous=existing, reason="warming"
                )
            finally:
                await self._inflight.release(slug)
        except AlmanacError as exc:
            log.warning("warming_item_failed", slug=slug, error=exc.message)
            return WarmingResult(
                slug=slug,
                status="error",
                error=exc.message,
                duration_ms=int((time.monotonic() - item_start) * 1000),
            )

        self._stats.record_warming(slug)
        return WarmingResult(
            slug=slug,
            status="success",
            confidence_score=page.confidence_score,
            duration_ms=int((time.monotonic() - item_start) * 1000),
        )
