from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

ItemStatus = Literal["success", "skipped", "error"]


class WarmingResult(BaseModel):
    slug: str
    status: ItemStatus
    error: str | None = None
    confidence_score: float | None = None
    duration_ms: int | None = None


class WarmingSummary(BaseModel):
    total: int
    success: int
    failed: int
    skipped: int
    duration_ms: int
    avg_duration_ms: int
    results: list[WarmingResult]


class RegenerationResult(BaseModel):
    slug: str
    status: ItemStatus
    confidence_score: float | None = None
    duration_ms: int | None = None
    error: str | None = None
    previous_views: int | None = None


class RegenerationSummary(BaseModel):
    total: int
    success: int
    skipped: int
    failed: int
    duration_ms: int
    results: list[RegenerationResult]
    timestamp: datetime


class InvalidationResult(BaseModel):
    slug: str
    success: bool = True
    deleted: bool


class BatchInvalidation(BaseModel):
    success: list[str] = []
    failed: list[dict[str, str]] = []


class CleanupSummary(BaseModel):
    stale_pages: int = 0
    low_confidence_pages: int = 0

    @property
    def total(self) -> int:
        return self.stale_pages + self.low_confidence_pages


class WarmingEstimate(BaseModel):
    topic_count: int
    per_page_ms: int
    total_ms: int
    total_minutes: int
