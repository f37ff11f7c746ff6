from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from almanac.models.graph import Backlink, RelatedPage
from almanac.slugs import normalise_slug


class _SlugInput(BaseModel):
    slug: str = Field(max_length=200)

    @field_validator("slug", mode="before")
    @classmethod
    def _normalise(cls, v: object) -> object:
        if not isinstance(v, str):
            return v
        return normalise_slug(v)


class GetPageInput(_SlugInput):
    pass


class GetPageOutput(BaseModel):
    slug: str
    title: str
    content: str
    excerpt: str | None
    confidence_score: float
    generated_at: datetime
    ttl_expires_at: datetime
    view_count: int
    published: bool
    cached: bool
    stale: bool
    refreshing: bool = False


class GraphQueryInput(_SlugInput):
    limit: int = Field(default=10, ge=1, le=100)


class RelatedPagesOutput(BaseModel):
    slug: str
    related: list[RelatedPage]


class BacklinksOutput(BaseModel):
    slug: str
    backlinks: list[Backlink]
