from __future__ import annotations

from almanac.models.api import CacheActionRequest
from almanac.models.graph import (
    Backlink,
    CandidateStats,
    ConnectedPage,
    GraphStats,
    LinkCandidate,
    LinkConfidence,
    OrphanedPage,
    OutgoingLink,
    RelatedPage,
)
from almanac.models.jobs import (
    BatchInvalidation,
    CleanupSummary,
    InvalidationResult,
    RegenerationResult,
    RegenerationSummary,
    WarmingEstimate,
    WarmingResult,
    WarmingSummary,
)
from almanac.models.page import (
    CachedPage,
    EntityLink,
    GenerationResult,
    PageMetadata,
    PageSummary,
    StoreStats,
)
from almanac.models.tools import (
    BacklinksOutput,
    GetPageInput,
    GetPageOutput,
    GraphQueryInput,
    RelatedPagesOutput,
)

__all__ = [
    # api
    "CacheActionRequest",
    # pages
    "CachedPage",
    "EntityLink",
    "GenerationResult",
    "PageMetadata",
    "PageSummary",
    "StoreStats",
    # graph
    "Backlink",
    "CandidateStats",
    "ConnectedPage",
    "GraphStats",
    "LinkCandidate",
    "LinkConfidence",
    "OrphanedPage",
    "OutgoingLink",
    "RelatedPage",
    # jobs
    "BatchInvalidation",
    "CleanupSummary",
    "InvalidationResult",
    "RegenerationResult",
    "RegenerationSummary",
    "WarmingEstimate",
    "WarmingResult",
    "WarmingSummary",
    # tools
    "BacklinksOutput",
    "GetPageInput",
    "GetPageOutput",
    "GraphQueryInput",
    "RelatedPagesOutput",
]
