"""Knowledge graph built from the entity mentions of generated pages.

Each successful generation feeds its ``entity_links`` through
``record_generation``: every entity becomes (or reinforces) a link candidate,
and every entity other than the page itself becomes a weighted edge from the
page to the entity's slug. Edges may point at slugs with no page yet; those
slugs are the suggestions backlog.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from almanac.models.graph import GraphStats
from almanac.slugs import slugify

if TYPE_CHECKING:
    from collections.abc import Sequence

    from almanac.models.graph import (
        Backlink,
        CandidateStats,
        LinkCandidate,
        LinkConfidence,
        OrphanedPage,
        OutgoingLink,
        RelatedPage,
    )
    from almanac.models.page import EntityConfidence, EntityLink
    from almanac.protocols import LinkStoreProtocol

log = structlog.get_logger()

TIER_BASE_STRENGTH: dict[str, float] = {"strong": 0.8, "weak": 0.5, "ghost": 0.2}

_ENTITY_TIER: dict[str, LinkConfidence] = {
    "strong": "strong",
    "medium": "weak",
    "weak": "weak",
    "ghost": "ghost",
}


def candidate_tier(confidence: EntityConfidence) -> LinkConfidence:
    return _ENTITY_TIER[confidence]


def connection_strength(tier: LinkConfidence, mentioned_count: int) -> float:
    """Edge weight for an entity of ``tier`` seen ``mentioned_count`` times.

    Starts at the tier's base strength and closes at most half of the gap to
    1.0 as mentions accumulate, so a weak entity never outranks a strong one
    and the value always stays within [0, 1].
    """
    base = TIER_BASE_STRENGTH[tier]
    mentions = max(mentioned_count, 1)
    bonus = (1.0 - base) * 0.5 * (1.0 - 1.0 / mentions)
    return round(min(1.0, base + bonus), 4)


class GraphEngine:
    def __init__(self, links: LinkStoreProtocol) -> None:
        self._links = links

    async def record_generation(
        self, source_slug: str, entity_links: Sequence[EntityLink]
    ) -> int:
        """Record candidates and edges for one generated page.

        Returns the number of edges written. Duplicate mentions of the same
        slug within a single page count once.
        """
        # The source page exists now; flip its own candidate, if any.
        await self._links.set_page_exists(source_slug, True)

        seen: set[str] = set()
        edges = 0
        for link in entity_links:
            target = slugify(link.slug or link.entity)
            if not target or target in seen:
                continue
            seen.add(target)

            tier = candidate_tier(link.confidence)
            candidate = await self._links.upsert_candidate(
                link.entity,
                target,
                tier,
                page_exists=target == source_slug,
            )
            if target == source_slug:
                continue

            strength = connection_strength(candidate.confidence, candidate.mentioned_count)
            await self._links.upsert_connection(source_slug, target, link.entity, strength)
            edges += 1

        log.info(
            "graph_recorded",
            slug=source_slug,
            entities=len(seen),
            edges=edges,
        )
        return edges

    async def get_related_pages(self, slug: str, limit: int = 10) -> list[RelatedPage]:
        return await self._links.get_related(slug, limit)

    async def get_backlinks(self, slug: str, limit: int = 20) -> list[Backlink]:
        return await self._links.get_incoming(slug, limit)

    async def get_outgoing_links(self, slug: str) -> list[OutgoingLink]:
        return await self._links.get_outgoing(slug)

    async def get_graph_stats(self, top_n: int = 10) -> GraphStats:
        total_pages = await self._links.count_pages()
        total_connections = await self._links.count_connections()
        return GraphStats(
            total_pages=total_pages,
            total_connections=total_connections,
            avg_connections_per_page=(
                round(total_connections / total_pages, 2) if total_pages else 0.0
            ),
            most_connected_pages=await self._links.top_incoming(top_n),
        )

    async def get_suggested_pages(self, limit: int = 20) -> list[LinkCandidate]:
        return await self._links.get_suggested(limit)

    async def find_orphaned_pages(self) -> list[OrphanedPage]:
        return await self._links.orphaned_pages()

    async def get_candidate_stats(self) -> CandidateStats:
        return await self._links.candidate_stats()
