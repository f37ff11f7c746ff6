"""Background scheduler coroutines for cache cleanup, regeneration and warming."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from almanac.state import AppState

log = structlog.get_logger()

# Stale pages get this long to be picked up by regeneration before cleanup
# deletes them outright.
CLEANUP_GRACE = timedelta(days=7)


async def run_cache_cleanup_scheduler(state: AppState) -> None:
    """Run cache cleanup at startup and (HTTP mode) on the configured interval."""
    interval_hours = state.settings.cache.cleanup_interval_hours

    # Both transports: run at startup, skipping if it ran recently.
    await _cleanup_once(state, interval_hours)

    if state.settings.server.transport != "http":
        return

    # HTTP long-running mode: repeat on the configured interval.
    while True:
        await asyncio.sleep(interval_hours * 3600)
        await _cleanup_once(state, interval_hours)


async def _cleanup_once(state: AppState, interval_hours: int) -> None:
    try:
        await state.invalidation.cleanup_if_due(interval_hours, grace=CLEANUP_GRACE)
    except Exception:
        log.warning("cache_cleanup_scheduler_error", exc_info=True)


async def run_regeneration_scheduler(state: AppState) -> None:
    """Run a regeneration batch every ``regeneration.interval_hours`` (HTTP mode only).

    The cron endpoint is the primary trigger; this loop is for deployments
    without an external scheduler.
    """
    settings = state.settings
    if settings.server.transport != "http" or not settings.regeneration.enabled:
        return

    while True:
        await asyncio.sleep(settings.regeneration.interval_hours * 3600)
        try:
            await state.regeneration.run()
        except Exception:
            log.warning("regeneration_scheduler_error", exc_info=True)


async def run_startup_warming(state: AppState) -> None:
    """Warm the configured topic list once, if ``warming.on_startup`` is set."""
    if not state.settings.warming.on_startup:
        return
    try:
        await state.warming.warm()
    except Exception:
        log.warning("startup_warming_error", exc_info=True)
