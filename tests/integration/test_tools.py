"""Integration tests for the tool handlers against a fully wired AppState."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import pytest

import almanac.server as server
import almanac.tools.get_page as t_get_page
import almanac.tools.graph_queries as t_graph
from almanac.errors import (
    GenerationError,
    GenerationThrottledError,
    InvalidInputError,
    NotFoundError,
)
from almanac.throttle import GenerationThrottle

if TYPE_CHECKING:
    from almanac.state import AppState


# ---------------------------------------------------------------------------
# get_page
# ---------------------------------------------------------------------------


class TestGetPage:
    async def test_miss_generates_and_caches(self, app_state: AppState, provider) -> None:
        result = await t_get_page.handle("sleep-training", app_state)

        assert result["slug"] == "sleep-training"
        assert result["title"] == "Sleep Training"
        assert result["cached"] is False
        assert result["stale"] is False
        assert result["published"] is True
        assert provider.calls == ["sleep training"]
        assert await app_state.pages.exists("sleep-training")

    async def test_hits_count_views(self, app_state: AppState, provider) -> None:
        await t_get_page.handle("sleep-training", app_state)
        second = await t_get_page.handle("sleep-training", app_state)
        third = await t_get_page.handle("sleep-training", app_state)

        assert second["cached"] is True
        assert (second["view_count"], third["view_count"]) == (0, 1)
        assert len(provider.calls) == 1
        snapshot = app_state.stats.snapshot()
        assert (snapshot.hits, snapshot.misses) == (2, 1)

    async def test_free_text_topic_is_normalised(self, app_state: AppState) -> None:
        result = await t_get_page.handle("Sleep Training?", app_state)
        assert result["slug"] == "sleep-training"

    async def test_invalid_slug(self, app_state: AppState) -> None:
        with pytest.raises(InvalidInputError):
            await t_get_page.handle("!!!", app_state)

    async def test_stale_page_served_and_refreshed(
        self, app_state: AppState, provider, seed_page
    ) -> None:
        await seed_page("teething", stale=True, view_count=3)

        result = await t_get_page.handle("teething", app_state)
        assert result["cached"] is True
        assert result["stale"] is True
        assert result["refreshing"] is True
        assert result["content"] == "Content for teething"

        await app_state.tasks.join()
        page = await app_state.pages.get("teething")
        assert page is not None
        assert page.stale is False
        assert page.view_count == 4
        assert (page.metadata.model_extra or {})["regeneration_reason"] == "stale_read"
        assert provider.calls == ["teething"]

    async def test_stale_page_already_in_flight_is_not_requeued(
        self, app_state: AppState, provider, seed_page
    ) -> None:
        await seed_page("teething", stale=True)
        await app_state.inflight.try_claim("teething")

        result = await t_get_page.handle("teething", app_state)
        assert result["refreshing"] is True
        await app_state.tasks.join()
        assert provider.calls == []

    async def test_concurrent_misses_share_one_generation(
        self, app_state: AppState, provider
    ) -> None:
        provider.release = asyncio.Event()

        first = asyncio.create_task(t_get_page.handle("teething", app_state))
        second = asyncio.create_task(t_get_page.handle("teething", app_state))
        while app_state.stats.snapshot().misses < 2:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        provider.release.set()

        results = await asyncio.gather(first, second)
        assert [r["slug"] for r in results] == ["teething", "teething"]
        assert len(provider.calls) == 1

    async def test_generation_failure_propagates(self, app_state: AppState, provider) -> None:
        provider.failures["teething"] = GenerationError("upstream down")
        with pytest.raises(GenerationError):
            await t_get_page.handle("teething", app_state)
        assert not await app_state.pages.exists("teething")
        assert app_state.inflight.in_flight() == []

    async def test_low_confidence_result_is_stored_but_hidden(
        self, app_state: AppState, provider, make_result
    ) -> None:
        provider.results["colic"] = make_result("Colic", confidence=0.1)
        with pytest.raises(NotFoundError):
            await t_get_page.handle("colic", app_state)

        page = await app_state.pages.get("colic")
        assert page is not None
        assert page.published is False

    async def test_soft_invalidated_page_is_hidden(
        self, app_state: AppState, seed_page
    ) -> None:
        await seed_page("teething")
        await app_state.invalidation.soft_invalidate("teething")
        with pytest.raises(NotFoundError):
            await t_get_page.handle("teething", app_state)

    async def test_generation_records_graph(
        self, app_state: AppState, provider, make_result
    ) -> None:
        provider.results["sleep-training"] = make_result(
            "Sleep Training",
            entities=[("Bedtime Routine", None), ("Sleep Regression", "sleep-regression")],
        )
        await t_get_page.handle("sleep-training", app_state)

        related = await t_graph.handle_related("sleep-training", 10, app_state)
        assert {r["slug"] for r in related["related"]} == {"bedtime-routine", "sleep-regression"}

        backlinks = await t_graph.handle_backlinks("bedtime-routine", 20, app_state)
        assert [b["slug"] for b in backlinks["backlinks"]] == ["sleep-training"]


# ---------------------------------------------------------------------------
# Generation throttle
# ---------------------------------------------------------------------------


class TestGetPageThrottle:
    async def test_failing_stale_refresh_is_not_retried_during_cooldown(
        self, app_state: AppState, provider, seed_page
    ) -> None:
        await seed_page("teething", stale=True)
        provider.failures["teething"] = GenerationError("upstream down")

        results = []
        for _ in range(5):
            results.append(await t_get_page.handle("teething", app_state))
            await app_state.tasks.join()

        assert provider.calls == ["teething"]
        assert results[0]["refreshing"] is True
        assert all(r["refreshing"] is False for r in results[1:])
        assert all(r["content"] == "Content for teething" for r in results)

    async def test_miss_after_failed_generation_is_throttled(
        self, app_state: AppState, provider
    ) -> None:
        provider.failures["teething"] = GenerationError("upstream down")
        with pytest.raises(GenerationError):
            await t_get_page.handle("teething", app_state)

        with pytest.raises(GenerationThrottledError) as exc_info:
            await t_get_page.handle("teething", app_state)
        assert 0 < exc_info.value.retry_after <= 30
        assert provider.calls == ["teething"]

    async def test_cooldown_applies_per_slug(self, app_state: AppState, provider) -> None:
        provider.failures["teething"] = GenerationError("upstream down")
        with pytest.raises(GenerationError):
            await t_get_page.handle("teething", app_state)

        result = await t_get_page.handle("colic", app_state)
        assert result["slug"] == "colic"

    async def test_rate_limit_caps_on_demand_generations(
        self, app_state: AppState, provider
    ) -> None:
        app_state.throttle = GenerationThrottle(max_per_window=2, window_seconds=60)

        await t_get_page.handle("colic", app_state)
        await t_get_page.handle("teething", app_state)
        with pytest.raises(GenerationThrottledError):
            await t_get_page.handle("diaper-rash", app_state)
        assert len(provider.calls) == 2
        assert not await app_state.pages.exists("diaper-rash")

    async def test_batch_jobs_are_not_throttled(
        self, app_state: AppState, provider, seed_page
    ) -> None:
        app_state.throttle.cool_down("teething")
        await seed_page("teething", stale=True)

        page = await app_state.regeneration.regenerate_one("teething")
        assert page.stale is False
        assert provider.calls == ["teething"]


# ---------------------------------------------------------------------------
# Graph queries
# ---------------------------------------------------------------------------


class TestGraphQueries:
    async def test_related_for_unknown_slug_is_empty(self, app_state: AppState) -> None:
        result = await t_graph.handle_related("unknown", 10, app_state)
        assert result == {"slug": "unknown", "related": []}

    async def test_limit_is_validated(self, app_state: AppState) -> None:
        with pytest.raises(InvalidInputError):
            await t_graph.handle_related("teething", 0, app_state)
        with pytest.raises(InvalidInputError):
            await t_graph.handle_backlinks("teething", 101, app_state)


# ---------------------------------------------------------------------------
# Server wrappers
# ---------------------------------------------------------------------------


def _ctx(state: AppState) -> MagicMock:
    ctx = MagicMock()
    ctx.request_context.lifespan_context = state
    return ctx


class TestServerToolWrappers:
    async def test_success_returns_handler_dict(self, app_state: AppState) -> None:
        result = await server.get_page("teething", _ctx(app_state))
        assert isinstance(result, dict)
        assert result["slug"] == "teething"

    async def test_expected_error_becomes_tool_error(self, app_state: AppState) -> None:
        result = await server.get_page("!!!", _ctx(app_state))
        assert result.isError is True
        payload = json.loads(result.content[0].text)
        assert payload["error"]["code"] == "INVALID_INPUT"

    async def test_backlinks_wrapper(self, app_state: AppState) -> None:
        await app_state.links.upsert_connection("a", "b", "B", 0.5)
        result = await server.get_backlinks("b", _ctx(app_state), limit=5)
        assert [b["slug"] for b in result["backlinks"]] == ["a"]
