"""Per-slug in-flight marker.

At most one regeneration of a given slug runs at a time. Callers choose how to
react when a slug is already claimed:

- batch jobs skip it (``try_claim`` returns False),
- forced regeneration is rejected (``claim`` raises ``RegenerationInProgressError``),
- read-path misses coalesce onto the running generation (``share``).
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

import structlog

from almanac.errors import RegenerationInProgressError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

log = structlog.get_logger()

T = TypeVar("T")


class InFlightTracker:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._claimed: set[str] = set()
        self._shared: dict[str, asyncio.Future] = {}

    async def try_claim(self, slug: str) -> bool:
        async with self._lock:
            if slug in self._claimed:
                return False
            self._claimed.add(slug)
            return True

    async def release(self, slug: str) -> None:
        async with self._lock:
            self._claimed.discard(slug)

    @asynccontextmanager
    async def claim(self, slug: str) -> AsyncIterator[None]:
        if not await self.try_claim(slug):
            log.info("regeneration_rejected", slug=slug, reason="in_flight")
            raise RegenerationInProgressError(slug)
        try:
            yield
        finally:
            await self.release(slug)

    async def share(self, slug: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory`` for ``slug``, or await the run already in progress.

        The first caller claims the slug and runs the factory; concurrent
        callers for the same slug receive the same result (or exception).
        """
        async with self._lock:
            pending = self._shared.get(slug)
            if pending is None and slug in self._claimed:
                # Held by a batch or forced regeneration, which cannot be joined.
                raise RegenerationInProgressError(slug)
            if pending is None:
                pending = asyncio.get_running_loop().create_future()
                self._shared[slug] = pending
                self._claimed.add(slug)
                owner = True
            else:
                owner = False

        if not owner:
            log.debug("generation_coalesced", slug=slug)
            return await asyncio.shield(pending)

        try:
            result = await factory()
        except asyncio.CancelledError:
            pending.cancel()
            raise
        except Exception as exc:
            pending.set_exception(exc)
            # Retrieve it so an un-awaited future does not log a warning.
            pending.exception()
            raise
        else:
            pending.set_result(result)
            return result
        finally:
            async with self._lock:
                self._shared.pop(slug, None)
                self._claimed.discard(slug)

    def is_in_flight(self, slug: str) -> bool:
        return slug in self._claimed

    def in_flight(self) -> list[str]:
        return sorted(self._claimed)
