"""Tool handlers for get_related_pages and get_backlinks."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from almanac.errors import InvalidInputError
from almanac.models.tools import BacklinksOutput, GraphQueryInput, RelatedPagesOutput

if TYPE_CHECKING:
    from almanac.state import AppState


def _validate(slug: str, limit: int) -> GraphQueryInput:
    try:
        return GraphQueryInput(slug=slug, limit=limit)
    except ValueError as exc:
        raise InvalidInputError(
            str(exc),
            "Provide a valid slug and a limit between 1 and 100.",
        ) from exc


async def handle_related(slug: str, limit: int, state: AppState) -> dict:
    """Handle a get_related_pages call."""
    log = structlog.get_logger().bind(tool="get_related_pages", slug=slug)
    log.info("handler_called")

    validated = _validate(slug, limit)
    related = await state.graph.get_related_pages(validated.slug, validated.limit)
    return RelatedPagesOutput(slug=validated.slug, related=related).model_dump(mode="json")


async def handle_backlinks(slug: str, limit: int, state: AppState) -> dict:
    """Handle a get_backlinks call."""
    log = structlog.get_logger().bind(tool="get_backlinks", slug=slug)
    log.info("handler_called")

    validated = _validate(slug, limit)
    backlinks = await state.graph.get_backlinks(validated.slug, validated.limit)
    return BacklinksOutput(slug=validated.slug, backlinks=backlinks).model_dump(mode="json")
