"""Helpers shared by the SQLite-backed stores."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from almanac.errors import StoreError

if TYPE_CHECKING:
    from collections.abc import Iterator

log = structlog.get_logger()


def to_timestamp(value: datetime) -> str:
    """Serialise a datetime to a sortable UTC ISO-8601 string."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def store_errors(store: str, operation: str, **context: object) -> Iterator[None]:
    """Log and re-raise any ``aiosqlite.Error`` as ``StoreError``."""
    try:
        yield
    except aiosqlite.Error as exc:
        log.warning("store_error", store=store, operation=operation, exc_info=True, **context)
        raise StoreError(f"{store} {operation} failed: {exc}") from exc
