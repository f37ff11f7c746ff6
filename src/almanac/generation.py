"""Generation gateway: the single caller of the external page generator.

The gateway walks an ordered list of providers. Each attempt is bounded by a
timeout; a failed or timed-out attempt is logged and recorded, then the next
provider is tried. A single provider is never retried here. Retry policy
belongs to the caller (warming may skip, the scheduler must not retry inside
a rate-limited batch).
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import httpx
import structlog
from pydantic import ValidationError

from almanac import __version__
from almanac.errors import GenerationError
from almanac.models.page import GenerationResult
from almanac.slugs import slug_to_query

if TYPE_CHECKING:
    from collections.abc import Sequence

    from almanac.config import GenerationSettings
    from almanac.protocols import GenerationProvider
    from almanac.stats import RuntimeStats

log = structlog.get_logger()


def build_http_client() -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        headers={"User-Agent": f"almanac/{__version__}"},
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


class HttpGenerationProvider:
    """Generation backend reachable over HTTP.

    POSTs ``{"query": ...}`` as JSON and expects a ``GenerationResult``-shaped
    JSON body back. The client is injected; the lifespan owns its lifecycle.
    """

    def __init__(self, client: httpx.AsyncClient, name: str, url: str) -> None:
        self._client = client
        self.name = name
        self.url = url

    async def generate(self, query: str) -> GenerationResult:
        try:
            response = await self._client.post(self.url, json={"query": query})
        except httpx.HTTPError as exc:
            raise GenerationError(f"Network error calling {self.name}: {exc}") from exc

        if not response.is_success:
            raise GenerationError(
                f"HTTP {response.status_code} from {self.name}",
                recoverable=response.status_code >= 500 or response.status_code == 429,
            )

        try:
            return GenerationResult.model_validate_json(response.content)
        except ValidationError as exc:
            raise GenerationError(
                f"Malformed response from {self.name}: {exc.error_count()} validation error(s)",
                recoverable=False,
            ) from exc


def build_providers(
    client: httpx.AsyncClient, settings: GenerationSettings
) -> list[HttpGenerationProvider]:
    return [HttpGenerationProvider(client, p.name, p.url) for p in settings.providers]


class GenerationGateway:
    def __init__(
        self,
        providers: Sequence[GenerationProvider],
        stats: RuntimeStats,
        *,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._providers = list(providers)
        self._stats = stats
        self._timeout = timeout_seconds

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def generate(self, slug: str, query: str | None = None) -> GenerationResult:
        """Produce fresh content for ``slug``.

        ``query`` defaults to the de-slugified slug. Raises ``GenerationError``
        once every provider has failed; the error carries one entry per attempt.
        """
        query = query or slug_to_query(slug)
        attempts: list[dict] = []
        start = time.monotonic()

        if not self._providers:
            attempts.append({"provider": None, "error": "no generation providers configured"})

        for provider in self._providers:
            attempt_start = time.monotonic()
            try:
                result = await asyncio.wait_for(provider.generate(query), self._timeout)
            except TimeoutError:
                error = f"timed out after {self._timeout:g}s"
            except Exception as exc:
                error = str(exc) or type(exc).__name__
            else:
                duration_ms = int((time.monotonic() - start) * 1000)
                self._stats.record_regeneration(slug, duration_ms=duration_ms)
                log.info(
                    "generation_succeeded",
                    slug=slug,
                    provider=provider.name,
                    attempts=len(attempts) + 1,
                    confidence=result.confidence_score,
                    duration_ms=duration_ms,
                )
                return result

            log.warning(
                "generation_attempt_failed",
                slug=slug,
                provider=provider.name,
                error=error,
                duration_ms=int((time.monotonic() - attempt_start) * 1000),
            )
            attempts.append({"provider": provider.name, "error": error})

        message = f"Generation failed for '{slug}': " + "; ".join(
            f"{a['provider']}: {a['error']}" for a in attempts
        )
        self._stats.record_error(slug, message)
        raise GenerationError(message, slug=slug, attempts=attempts)
