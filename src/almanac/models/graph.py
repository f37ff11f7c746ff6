from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

LinkConfidence = Literal["strong", "weak", "ghost"]


class LinkCandidate(BaseModel):
    """An entity that may or may not have its own page yet."""

    entity: str
    normalized_slug: str
    confidence: LinkConfidence
    mentioned_count: int = Field(ge=1)
    page_exists: bool = False
    first_seen_at: datetime
    last_seen_at: datetime


class RelatedPage(BaseModel):
    slug: str
    title: str
    strength: float
    direction: Literal["outgoing", "incoming", "bidirectional"]
    mentioned_count: int = 0
    page_exists: bool = False


class Backlink(BaseModel):
    slug: str
    title: str
    link_text: str
    strength: float


class OutgoingLink(BaseModel):
    slug: str
    title: str
    link_text: str
    strength: float
    page_exists: bool


class ConnectedPage(BaseModel):
    slug: str
    title: str
    connection_count: int


class OrphanedPage(BaseModel):
    slug: str
    title: str


class GraphStats(BaseModel):
    total_pages: int
    total_connections: int
    avg_connections_per_page: float
    most_connected_pages: list[ConnectedPage]


class CandidateStats(BaseModel):
    total: int = 0
    with_pages: int = 0
    without_pages: int = 0
    strong: int = 0
    weak: int = 0
    ghost: int = 0
