# =============================================================================
# Embedding Gateway — Cached Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Wraps an embedding provider with caching, per-call timeouts and bounded
# batch concurrency.
#
#   EmbeddingProvider (Protocol)
#   └── OpenAIEmbeddingProvider — any OpenAI-compatible embeddings endpoint
#   EmbeddingGateway
#   ├── embed(text)        — cache (long TTL) → provider → cache
#   ├── embed_query(text)  — synonym-enhanced embed() for search queries
#   └── embed_many(texts)  — bulk path, at most N provider calls in flight
#
# Provider failure or timeout surfaces as EmbeddingUnavailable. The gateway
# makes zero or one provider call per unique text per TTL window.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens; texts are truncated to 8,000 characters
# - Bulk batches default to 25 texts per provider call
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from openai import AsyncOpenAI

from context_engine.config import Settings, get_settings
from context_engine.errors import EmbeddingUnavailable
from context_engine.services.cache import CacheLayer, TtlClass, content_hash
from context_engine.services.diagnostics import Diagnostics

logger = logging.getLogger(__name__)

# Synonym expansions appended to search queries before embedding
QUERY_ENHANCEMENTS: dict[str, str] = {
    "restaurant": "restaurant dining food meal",
    "gas": "gas fuel gasoline petrol station",
    "grocery": "grocery store food shopping market",
    "pharmacy": "pharmacy drug store medicine health",
    "electronics": "electronics technology computer phone",
}


def enhance_query(query: str) -> str:
    """Lower-case the query and append expansions for known keywords."""
    enhanced = query.lower()
    for keyword, expansion in QUERY_ENHANCEMENTS.items():
        if keyword in enhanced:
            enhanced += f" {expansion}"
    return enhanced


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class BatchEmbeddingResult:
    """Outcome for one text of a bulk embedding run."""

    text: str
    success: bool
    embedding: list[float] | None = None
    cached: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# Provider Protocol + OpenAI Implementation
# ---------------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    """Anything that turns texts into vectors, in input order."""

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class OpenAIEmbeddingProvider:
    """
    Embedding provider backed by the OpenAI SDK.

    The AsyncOpenAI client is created lazily so importing this module does
    not require an API key. API key resolution order:
      1. OPENAI_API_KEY
      2. EMBEDDING_API_KEY (e.g. a DashScope key with embedding_base_url set)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client: AsyncOpenAI | None = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            resolved_key = (
                self._settings.openai_api_key or self._settings.embedding_api_key
            )
            if not resolved_key:
                raise ValueError(
                    "No API key configured for embeddings. "
                    "Set OPENAI_API_KEY or EMBEDDING_API_KEY in .env"
                )

            client_kwargs: dict = {"api_key": resolved_key}
            if self._settings.embedding_base_url:
                client_kwargs["base_url"] = self._settings.embedding_base_url

            self._client = AsyncOpenAI(**client_kwargs)
            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self._settings.embedding_model,
                self._settings.embedding_base_url or "https://api.openai.com/v1",
            )
        return self._client

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        create_kwargs: dict = {
            "model": self._settings.embedding_model,
            "input": list(texts),
            "encoding_format": "float",
        }
        if self._settings.embedding_dimensions:
            create_kwargs["dimensions"] = self._settings.embedding_dimensions

        response = await self._get_client().embeddings.create(**create_kwargs)

        # Order by response index so vectors line up with the input texts
        embeddings: list[list[float]] = [[] for _ in texts]
        for item in sorted(response.data, key=lambda x: x.index):
            embeddings[item.index] = item.embedding

        logger.debug(
            "Embedded %d texts, %d prompt tokens",
            len(texts),
            response.usage.prompt_tokens if response.usage else 0,
        )
        return embeddings


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class EmbeddingGateway:
    """Cache-checked, timeout-bounded access to the embedding provider."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: CacheLayer,
        settings: Settings | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._settings = settings or get_settings()
        self._diagnostics = diagnostics or Diagnostics()
        self._semaphore = asyncio.Semaphore(self._settings.embedding_max_in_flight)

    def _key(self, text: str) -> str:
        return self._cache.key("embedding", content_hash(text))

    def _prepare(self, text: str) -> str:
        return text[: self._settings.embedding_max_chars]

    async def embed(self, text: str) -> list[float]:
        """
        Return the vector for text, calling the provider only on a miss.

        Raises:
            EmbeddingUnavailable: provider error, timeout, or empty response.
        """
        prepared = self._prepare(text)
        key = self._key(prepared)

        cached = await self._cache.get(key)
        if cached is not None:
            return cached

        vectors = await self._call_provider([prepared])
        vector = vectors[0]
        await self._cache.put(key, vector, TtlClass.LONG)
        return vector

    async def embed_query(self, query: str) -> list[float]:
        """Embed a search query after synonym enhancement."""
        return await self.embed(enhance_query(query))

    async def embed_many(
        self, texts: Sequence[str],
    ) -> list[BatchEmbeddingResult]:
        """
        Embed many texts for bulk reprocessing, outside the query path.

        Texts are split into batches of embedding_batch_size; cached texts
        are skipped; at most embedding_max_in_flight provider calls run at
        once. Failures are reported per text and never raised.
        """
        if not texts:
            return []

        batch_size = self._settings.embedding_batch_size
        batches = [
            list(texts[i : i + batch_size])
            for i in range(0, len(texts), batch_size)
        ]
        logger.info(
            "Bulk embedding %d texts in %d batches (max in flight=%d)",
            len(texts), len(batches), self._settings.embedding_max_in_flight,
        )

        batch_results = await asyncio.gather(
            *(self._embed_batch(batch) for batch in batches)
        )
        results = [result for batch in batch_results for result in batch]

        failed = sum(1 for r in results if not r.success)
        logger.info(
            "Bulk embedding complete: %d succeeded, %d failed",
            len(results) - failed, failed,
        )
        return results

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _embed_batch(self, batch: list[str]) -> list[BatchEmbeddingResult]:
        results: list[BatchEmbeddingResult | None] = [None] * len(batch)
        misses: list[int] = []

        for i, text in enumerate(batch):
            cached = await self._cache.get(self._key(self._prepare(text)))
            if cached is not None:
                results[i] = BatchEmbeddingResult(
                    text=text, success=True, embedding=cached, cached=True,
                )
            else:
                misses.append(i)

        if misses:
            prepared = [self._prepare(batch[i]) for i in misses]
            try:
                async with self._semaphore:
                    vectors = await self._call_provider(prepared)
            except EmbeddingUnavailable as exc:
                for i in misses:
                    results[i] = BatchEmbeddingResult(
                        text=batch[i], success=False, error=str(exc),
                    )
            else:
                for i, text, vector in zip(misses, prepared, vectors, strict=True):
                    await self._cache.put(self._key(text), vector, TtlClass.LONG)
                    results[i] = BatchEmbeddingResult(
                        text=batch[i], success=True, embedding=vector,
                    )

        return [r for r in results if r is not None]

    async def _call_provider(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = await asyncio.wait_for(
                self._provider.embed(texts),
                timeout=self._settings.embedding_timeout_seconds,
            )
        except Exception as exc:
            self._diagnostics.record_embedding_failure()
            logger.warning(
                "Embedding provider failed for %d texts: %s: %s",
                len(texts), type(exc).__name__, exc,
            )
            raise EmbeddingUnavailable(exc) from exc

        if len(vectors) != len(texts) or any(not v for v in vectors):
            self._diagnostics.record_embedding_failure()
            raise EmbeddingUnavailable(
                ValueError(
                    f"provider returned {len(vectors)} vectors for {len(texts)} texts"
                )
            )
        return vectors
