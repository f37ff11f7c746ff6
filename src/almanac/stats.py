"""Process-scoped runtime counters.

One ``RuntimeStats`` instance is created per process and injected into every
component that records events. Counters are never persisted and are used for
observability only.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel

log = structlog.get_logger()

_MAX_RECENT_ERRORS = 50


class RecordedError(BaseModel):
    slug: str
    message: str
    at: datetime


class RuntimeSnapshot(BaseModel):
    hits: int
    misses: int
    hit_rate: float
    regenerations: int
    invalidations: int
    warmings: int
    errors: int
    started_at: datetime
    uptime_seconds: float
    recent_errors: list[RecordedError]


class RuntimeStats:
    """Counters safe for concurrent increments from any thread or task."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._hits = 0
        self._misses = 0
        self._regenerations = 0
        self._invalidations = 0
        self._warmings = 0
        self._errors = 0
        self._recent_errors: deque[RecordedError] = deque(maxlen=_MAX_RECENT_ERRORS)
        self._started_at = datetime.now(UTC)
        self._started_monotonic = time.monotonic()

    def record_hit(self, slug: str) -> None:
        with self._lock:
            self._hits += 1
        log.debug("cache_hit", slug=slug)

    def record_miss(self, slug: str) -> None:
        with self._lock:
            self._misses += 1
        log.debug("cache_miss", slug=slug)

    def record_regeneration(self, slug: str, *, duration_ms: int | None = None) -> None:
        with self._lock:
            self._regenerations += 1
        log.info("page_regenerated", slug=slug, duration_ms=duration_ms)

    def record_invalidation(self, slug: str) -> None:
        with self._lock:
            self._invalidations += 1
        log.info("page_invalidated", slug=slug)

    def record_warming(self, slug: str) -> None:
        with self._lock:
            self._warmings += 1
        log.info("page_warmed", slug=slug)

    def record_error(self, slug: str, message: str) -> None:
        with self._lock:
            self._errors += 1
            self._recent_errors.append(
                RecordedError(slug=slug, message=message, at=datetime.now(UTC))
            )
        log.warning("page_error_recorded", slug=slug, error=message)

    def snapshot(self) -> RuntimeSnapshot:
        with self._lock:
            lookups = self._hits + self._misses
            return RuntimeSnapshot(
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
                regenerations=self._regenerations,
                invalidations=self._invalidations,
                warmings=self._warmings,
                errors=self._errors,
                started_at=self._started_at,
                uptime_seconds=time.monotonic() - self._started_monotonic,
                recent_errors=list(self._recent_errors),
            )

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()
        log.info("runtime_stats_reset")
