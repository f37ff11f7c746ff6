"""Server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState via the FastMCP lifespan context manager (stdio)
- Register tools
- Start the correct transport (stdio MCP tools, or the HTTP API)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

import structlog
from mcp.server.fastmcp import Context, FastMCP
from mcp.types import CallToolResult, TextContent

import almanac.tools.get_page as t_get_page
import almanac.tools.graph_queries as t_graph
from almanac import __version__
from almanac.config import Settings
from almanac.errors import AlmanacError
from almanac.schedulers import run_cache_cleanup_scheduler, run_startup_warming
from almanac.state import AppState, open_app_state
from almanac.transport import run_http_server

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # Logs go to stderr; stdout carries the MCP JSON-RPC stream in stdio mode
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan (stdio)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings = Settings()
    _setup_logging(settings)

    log.info("server_starting", version=__version__, transport=settings.server.transport)

    async with open_app_state(settings) as state:
        background = [
            asyncio.create_task(run_cache_cleanup_scheduler(state)),
            asyncio.create_task(run_startup_warming(state)),
        ]
        log.info(
            "server_started",
            version=__version__,
            transport=settings.server.transport,
            providers=state.gateway.provider_names,
        )
        try:
            yield state
        finally:
            for task in background:
                task.cancel()
            for task in background:
                with suppress(asyncio.CancelledError):
                    await task
            log.info("server_stopping")


# ---------------------------------------------------------------------------
# FastMCP instance and tool registration
# ---------------------------------------------------------------------------

mcp = FastMCP("almanac", lifespan=lifespan)
# FastMCP doesn't expose a version kwarg; set it on the underlying Server
# so the MCP initialize handshake reports our version, not the SDK's.
mcp._mcp_server.version = __version__  # pyright: ignore[reportPrivateUsage]


def _serialise_tool_error(error: AlmanacError) -> CallToolResult:
    """Convert an AlmanacError to the MCP tool error result envelope."""
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(error.to_dict()))],
        isError=True,
    )


def _log_tool_error(tool: str, exc: AlmanacError) -> None:
    log.warning(
        "tool_error",
        tool=tool,
        code=exc.code,
        message=exc.message,
        recoverable=exc.recoverable,
    )


@mcp.tool()
async def get_page(slug: str, ctx: Context) -> object:
    """Return the reference page for a topic, generating it on first request.

    Accepts a slug (``sleep-training``) or a free-text topic (``Sleep training``).
    Stale pages are returned immediately and refreshed in the background.
    """
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_get_page.handle(slug, state)
    except AlmanacError as exc:
        _log_tool_error("get_page", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="get_page", exc_info=True)
        raise


@mcp.tool()
async def get_related_pages(slug: str, ctx: Context, limit: int = 10) -> object:
    """List pages connected to a page in either direction, strongest first."""
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_graph.handle_related(slug, limit, state)
    except AlmanacError as exc:
        _log_tool_error("get_related_pages", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="get_related_pages", exc_info=True)
        raise


@mcp.tool()
async def get_backlinks(slug: str, ctx: Context, limit: int = 20) -> object:
    """List pages that link to a page, strongest first."""
    state: AppState = ctx.request_context.lifespan_context
    try:
        return await t_graph.handle_backlinks(slug, limit, state)
    except AlmanacError as exc:
        _log_tool_error("get_backlinks", exc)
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool="get_backlinks", exc_info=True)
        raise


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()

    if settings.server.transport == "http":
        _setup_logging(settings)
        run_http_server(settings)
        return

    mcp.run()


if __name__ == "__main__":
    main()
