from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

EntityConfidence = Literal["strong", "medium", "weak", "ghost"]


class EntityLink(BaseModel):
    """An entity mention discovered in a generated page."""

    entity: str = Field(min_length=1)
    slug: str | None = None  # Normalised with slugify(); falls back to entity text
    confidence: EntityConfidence = "strong"


class PageMetadata(BaseModel):
    """Free-form page metadata. Unknown keys are preserved as-is."""

    model_config = ConfigDict(extra="allow")

    sources_used: list[str] = []
    entity_links: list[EntityLink] = []


class GenerationResult(BaseModel):
    """What the external generation collaborator returns for one query."""

    title: str
    content: str
    excerpt: str | None = None
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    metadata: PageMetadata = PageMetadata()
    published: bool | None = None  # None → decided by min_publish_confidence


class CachedPage(BaseModel):
    """A generated page as stored in the page cache."""

    slug: str
    title: str
    content: str
    excerpt: str | None = None
    confidence_score: float
    generated_at: datetime
    ttl_expires_at: datetime
    view_count: int = 0
    published: bool = True
    metadata: PageMetadata = PageMetadata()
    regeneration_count: int = 0
    last_regenerated_at: datetime | None = None
    last_viewed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    stale: bool = False  # Computed on read: now > ttl_expires_at


class PageSummary(BaseModel):
    """Compact page view used by admin listings."""

    slug: str
    title: str
    views: int
    confidence: float
    expires_at: datetime | None = None


class StoreStats(BaseModel):
    total_pages: int = 0
    published_pages: int = 0
    stale_pages: int = 0
    avg_confidence: float = 0.0
    total_views: int = 0
    regenerated_pages: int = 0
    low_confidence_pages: int = 0
