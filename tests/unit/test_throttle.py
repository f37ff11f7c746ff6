"""Unit tests for almanac.throttle.GenerationThrottle."""

from __future__ import annotations

import pytest

from almanac.config import GenerationSettings
from almanac.errors import ErrorCode, GenerationThrottledError
from almanac.throttle import GenerationThrottle


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> _Clock:
    return _Clock()


class TestCooldown:
    def test_new_slug_is_allowed(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(clock=clock)
        assert throttle.allows("teething")
        assert throttle.cooldown_remaining("teething") == 0

    def test_cooldown_blocks_until_it_expires(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(cooldown_seconds=30, clock=clock)
        throttle.acquire("teething")
        throttle.cool_down("teething")

        clock.now += 10
        with pytest.raises(GenerationThrottledError) as exc_info:
            throttle.acquire("teething")
        assert exc_info.value.retry_after == 20
        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        assert exc_info.value.status_code == 429

        clock.now += 20
        assert throttle.allows("teething")
        throttle.acquire("teething")

    def test_cooldown_is_per_slug(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(clock=clock)
        throttle.cool_down("teething")
        assert not throttle.allows("teething")
        assert throttle.allows("colic")

    def test_zero_cooldown_disables_it(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(cooldown_seconds=0, clock=clock)
        throttle.cool_down("teething")
        assert throttle.allows("teething")


class TestRateLimit:
    def test_window_caps_generation_starts(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(max_per_window=2, window_seconds=60, clock=clock)
        throttle.acquire("a")
        clock.now += 5
        throttle.acquire("b")

        with pytest.raises(GenerationThrottledError) as exc_info:
            throttle.acquire("c")
        assert exc_info.value.retry_after == 55

    def test_slot_frees_when_oldest_start_leaves_window(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(max_per_window=2, window_seconds=60, clock=clock)
        throttle.acquire("a")
        clock.now += 5
        throttle.acquire("b")

        clock.now += 55
        assert throttle.window_reset_in() == 0
        throttle.acquire("c")
        assert not throttle.allows("d")

    def test_rejected_attempts_do_not_use_slots(self, clock: _Clock) -> None:
        throttle = GenerationThrottle(max_per_window=1, window_seconds=60, clock=clock)
        throttle.acquire("a")
        for _ in range(3):
            with pytest.raises(GenerationThrottledError):
                throttle.acquire("b")
        clock.now += 60
        throttle.acquire("b")


def test_from_settings() -> None:
    settings = GenerationSettings(
        cooldown_seconds=5, rate_limit_max=1, rate_limit_window_seconds=10
    )
    throttle = GenerationThrottle.from_settings(settings)
    throttle.acquire("a")
    assert not throttle.allows("b")
