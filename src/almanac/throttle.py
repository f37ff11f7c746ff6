"""Throttle for on-demand generation.

Read-path misses and stale refreshes are triggered by unauthenticated
requests, so two limits apply before the provider is called:

- a per-slug cooldown: a slug whose last generation finished (successfully or
  not) less than ``cooldown_seconds`` ago is not generated again,
- a sliding window: at most ``rate_limit_max`` generations start per
  ``rate_limit_window_seconds``.

Batch warming and scheduled or forced regeneration are paced by their own
delays and only start cooldowns.
"""

from __future__ import annotations

import math
import time
from collections import deque
from typing import TYPE_CHECKING

import structlog

from almanac.errors import GenerationThrottledError

if TYPE_CHECKING:
    from collections.abc import Callable

    from almanac.config import GenerationSettings

log = structlog.get_logger()


class GenerationThrottle:
    def __init__(
        self,
        *,
        cooldown_seconds: float = 30.0,
        max_per_window: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cooldown = cooldown_seconds
        self._max = max_per_window
        self._window = window_seconds
        self._clock = clock
        self._cooldown_until: dict[str, float] = {}
        self._started: deque[float] = deque()

    @classmethod
    def from_settings(cls, settings: GenerationSettings) -> GenerationThrottle:
        return cls(
            cooldown_seconds=settings.cooldown_seconds,
            max_per_window=settings.rate_limit_max,
            window_seconds=settings.rate_limit_window_seconds,
        )

    def cooldown_remaining(self, slug: str) -> float:
        until = self._cooldown_until.get(slug)
        if until is None:
            return 0.0
        remaining = until - self._clock()
        if remaining <= 0:
            del self._cooldown_until[slug]
            return 0.0
        return remaining

    def window_reset_in(self) -> float:
        """Seconds until a window slot frees up; 0 when one is free now."""
        self._expire()
        if len(self._started) < self._max:
            return 0.0
        return max(0.0, self._started[0] + self._window - self._clock())

    def allows(self, slug: str) -> bool:
        return self.cooldown_remaining(slug) == 0 and self.window_reset_in() == 0

    def acquire(self, slug: str) -> None:
        """Take a window slot for ``slug`` or raise ``GenerationThrottledError``."""
        remaining = self.cooldown_remaining(slug)
        if remaining > 0:
            log.info("generation_throttled", slug=slug, reason="cooldown", retry_after=remaining)
            raise GenerationThrottledError(
                f"Page '{slug}' was generated recently",
                retry_after=math.ceil(remaining),
            )
        reset_in = self.window_reset_in()
        if reset_in > 0:
            log.warning(
                "generation_throttled", slug=slug, reason="rate_limit", retry_after=reset_in
            )
            raise GenerationThrottledError(
                "Generation rate limit exceeded",
                retry_after=math.ceil(reset_in),
            )
        self._started.append(self._clock())

    def cool_down(self, slug: str) -> None:
        """Start the cooldown for ``slug``. Called when a generation finishes."""
        if self._cooldown > 0:
            self._cooldown_until[slug] = self._clock() + self._cooldown

    def _expire(self) -> None:
        cutoff = self._clock() - self._window
        while self._started and self._started[0] <= cutoff:
            self._started.popleft()
