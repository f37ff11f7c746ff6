"""Generate → store → record-graph pipeline shared by every write path."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from almanac.errors import AlmanacError

if TYPE_CHECKING:
    from almanac.cache import CacheService
    from almanac.generation import GenerationGateway
    from almanac.graph import GraphEngine
    from almanac.models.page import CachedPage

log = structlog.get_logger()


class PageRefresher:
    def __init__(
        self,
        gateway: GenerationGateway,
        cache: CacheService,
        graph: GraphEngine,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._graph = graph

    async def refresh(
        self,
        slug: str,
        *,
        query: str | None = None,
        previous: CachedPage | None = None,
        reason: str | None = None,
        extra_metadata: dict[str, object] | None = None,
    ) -> CachedPage:
        """Regenerate ``slug`` and store the result in place.

        ``previous`` carries the view count forward. Generation and store
        errors propagate. The graph is eventually consistent with the page
        table, so a failure to record edges is logged and the stored page is
        still returned.
        """
        result = await self._gateway.generate(slug, query)

        metadata = dict(extra_metadata or {})
        if reason is not None:
            metadata.setdefault("regeneration_reason", reason)

        page = await self._cache.put(
            slug,
            result,
            view_count=previous.view_count if previous is not None else None,
            extra_metadata=metadata or None,
        )

        try:
            await self._graph.record_generation(slug, result.metadata.entity_links)
        except AlmanacError:
            log.warning("graph_record_failed", slug=slug, exc_info=True)

        return page
