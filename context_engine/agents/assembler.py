# =============================================================================
# Context Assembler — Query → Ranked, Diversified, Cached ContextBundle
# =============================================================================
#
# The single inbound operation of the engine:
#
#   assemble(query, tenant_id, conversation_id?, options?) → ContextBundle
#
# Pipeline:
#
#   cache (medium TTL) ──hit──▶ return cached bundle
#     │ miss
#     ▼
#   classify + extract          (pure, never fails)
#     ▼
#   embed_query                 (fatal on failure → ContextUnavailable)
#     ▼
#   ┌──────────┬────────────┬───────────────┬───────────┐
#   │ receipts │ warranties │ conversations │ analytics │  concurrent,
#   └──────────┴────────────┴───────────────┴───────────┘  failures absorbed
#     ▼
#   rank (stable sort by relevance) → diversify → rank 1..N
#     ▼
#   summarize + duplicate groups → cache (skipped if a source failed) → return
#
# DESIGN DECISION: Explicit dependency injection.
# The cache, embedding gateway and retrieval sources are built once at
# process start (create_context_assembler) and passed in, so tests can
# hand the assembler fakes without patching module globals.
#
# DESIGN DECISION: asyncio.gather(return_exceptions=True) as the join.
# Every selected source runs as its own task; the assembler waits for all
# of them and keeps whatever succeeded. Each source enforces its own
# timeout, so one slow source never holds the others back.
#
# DIVERSITY:
# Per-type caps are ceil(max_items × fraction) with fractions receipts 0.4,
# warranties 0.3, conversations 0.2, analytics 0.1. The first pass walks
# the sorted list admitting items whose type is under its cap; the
# backfill pass then fills remaining slots in sorted order regardless of
# type. Backfilled items follow the first-pass items. Both passes stop at
# max_items and the result is truncated to max_items.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from context_engine.agents.understanding import classify, extract
from context_engine.config import Settings, get_settings
from context_engine.errors import ContextUnavailable, EmbeddingUnavailable
from context_engine.models.context import (
    BundleMetadata,
    ContextBundle,
    ContextSummary,
    ContextUnavailableResponse,
    EntitySet,
    EvidenceItem,
    Intent,
    Query,
    QueryOptions,
    SourceType,
    TypeCount,
)
from context_engine.services.cache import CacheLayer, TtlClass, create_cache
from context_engine.services.diagnostics import Diagnostics
from context_engine.services.embedder import EmbeddingGateway, OpenAIEmbeddingProvider
from context_engine.services.vectorstore import PgSpendingInsights, PgVectorStore
from context_engine.sources import (
    AnalyticsSource,
    ConversationsSource,
    ReceiptsSource,
    RetrievalSource,
    WarrantiesSource,
    group_potential_duplicates,
)

logger = logging.getLogger(__name__)

# Fallback share for a source type with no configured diversity fraction
_DEFAULT_FRACTION = 0.25


# ---------------------------------------------------------------------------
# Ranking, Diversity & Summary (pure functions)
# ---------------------------------------------------------------------------


def type_caps(max_items: int, fractions: Mapping[str, float]) -> dict[SourceType, int]:
    """Per-type admission caps for the first diversity pass."""
    # round() first: 15 × 0.2 is 3.0000000000000004 in binary floating point
    return {
        source_type: math.ceil(
            round(max_items * fractions.get(source_type.value, _DEFAULT_FRACTION), 9)
        )
        for source_type in SourceType
    }


def diversify(
    sorted_items: Sequence[EvidenceItem],
    max_items: int,
    fractions: Mapping[str, float],
) -> list[EvidenceItem]:
    """
    Select up to max_items from a relevance-sorted list under per-type caps,
    then backfill free slots from the same list regardless of type.
    """
    caps = type_caps(max_items, fractions)
    counts: Counter[SourceType] = Counter()
    admitted: list[int] = []

    for index, item in enumerate(sorted_items):
        if len(admitted) >= max_items:
            break
        if counts[item.source_type] < caps[item.source_type]:
            admitted.append(index)
            counts[item.source_type] += 1

    taken = set(admitted)
    for index in range(len(sorted_items)):
        if len(admitted) >= max_items:
            break
        if index not in taken:
            admitted.append(index)

    return [sorted_items[index] for index in admitted][:max_items]


def rank_and_limit(
    items: Sequence[EvidenceItem],
    max_items: int,
    fractions: Mapping[str, float],
) -> list[EvidenceItem]:
    """
    Sort by relevance (stable: ties keep retrieval order), diversify, and
    assign rank 1..N plus relevance normalised to the top item.
    """
    ordered = sorted(items, key=lambda item: item.relevance_score, reverse=True)
    selected = diversify(ordered, max_items, fractions)
    top = ordered[0].relevance_score if ordered else 0.0

    return [
        item.model_copy(
            update={
                "rank": rank,
                "normalized_relevance": item.relevance_score / top if top > 0 else 0.0,
            }
        )
        for rank, item in enumerate(selected, start=1)
    ]


def summarize_context(items: Sequence[EvidenceItem]) -> ContextSummary:
    """Counts per type, mean relevance and a qualitative strength label."""
    if not items:
        return ContextSummary()

    counts: Counter[str] = Counter(item.source_type.value for item in items)
    avg_relevance = sum(item.relevance_score for item in items) / len(items)
    if avg_relevance > 0.7:
        strength = "high"
    elif avg_relevance > 0.5:
        strength = "medium"
    else:
        strength = "low"

    # Counter preserves first-seen order, so sorted() keeps it for ties
    top_types = sorted(counts.items(), key=lambda pair: pair[1], reverse=True)

    return ContextSummary(
        total_items=len(items),
        items_by_type=dict(counts),
        avg_relevance=avg_relevance,
        strength=strength,
        top_context_types=[
            TypeCount(type=SourceType(source), count=count)
            for source, count in top_types
        ],
    )


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


class ContextAssembler:
    """Orchestrates understanding, embedding and retrieval for one query."""

    def __init__(
        self,
        cache: CacheLayer,
        embedder: EmbeddingGateway,
        sources: Mapping[SourceType, RetrievalSource],
        settings: Settings | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self._cache = cache
        self._embedder = embedder
        self._sources = dict(sources)
        self._settings = settings or get_settings()
        self._diagnostics = diagnostics or Diagnostics()

    @property
    def cache(self) -> CacheLayer:
        return self._cache

    @property
    def diagnostics(self) -> Diagnostics:
        return self._diagnostics

    async def assemble(
        self,
        query: str,
        tenant_id: str,
        conversation_id: str | None = None,
        options: QueryOptions | Mapping[str, Any] | None = None,
    ) -> ContextBundle:
        """
        Build (or fetch from cache) the context bundle for a query.

        Retrieval failures are absorbed: if every source fails the bundle
        has no items and a "low" strength summary.

        Raises:
            ContextUnavailable: the query could not be embedded. The
                original EmbeddingUnavailable is chained as __cause__.
        """
        started = time.perf_counter()
        options = self._coerce_options(options)
        max_items = min(
            options.max_items or self._settings.default_max_items,
            self._settings.max_items_ceiling,
        )
        context_types = self._requested_types(options)

        key = self._cache.key(
            "rag",
            {
                "query": query[: self._settings.context_cache_query_prefix],
                "tenant": tenant_id,
                "conversation": conversation_id,
                "options": options.cache_fingerprint(),
            },
        )
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                bundle = ContextBundle.model_validate(cached)
            except ValueError as exc:
                logger.warning("Discarding malformed cached bundle: %s", exc)
            else:
                logger.debug("Context cache hit for tenant %s", tenant_id)
                return bundle

        # Step 1: Query understanding
        intent = classify(query)
        entities = extract(query)
        logger.info(
            "Assembling context: intent=%s (%.2f), sources=%s, max_items=%d",
            intent.primary.value, intent.confidence,
            [t.value for t in context_types], max_items,
        )

        # Step 2: Query vector
        try:
            query_vector = await self._embedder.embed_query(query)
        except EmbeddingUnavailable as exc:
            logger.error("Cannot assemble context for tenant %s: %s", tenant_id, exc)
            raise ContextUnavailable(query, exc) from exc

        # Step 3: Concurrent retrieval
        evidence, failed_sources = await self._retrieve_all(
            context_types, query_vector, tenant_id, entities, options, conversation_id,
        )

        # Steps 4-8: Rank, diversify, summarize
        items = rank_and_limit(evidence, max_items, self._settings.diversity_fractions)
        summary = summarize_context(items)
        duplicate_groups = (
            group_potential_duplicates(items)
            if intent.primary is Intent.DUPLICATE_DETECTION
            else []
        )

        bundle = ContextBundle(
            query=Query(
                text=query,
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                options=options,
            ),
            intent=intent,
            entities=entities,
            items=items,
            summary=summary,
            duplicate_groups=duplicate_groups,
            metadata=BundleMetadata(
                total_items=len(items),
                context_types=context_types,
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                generated_at=datetime.now(UTC),
            ),
        )

        # Step 9: Cache, unless a source failed
        if failed_sources:
            logger.info(
                "Not caching bundle: sources failed %s",
                [t.value for t in failed_sources],
            )
        else:
            await self._cache.put(key, bundle.model_dump(mode="json"), TtlClass.MEDIUM)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._diagnostics.record_assembly(elapsed_ms)
        logger.info(
            "Assembled %d items from %d candidates in %.0fms (strength=%s)",
            len(items), len(evidence), elapsed_ms, summary.strength,
        )
        return bundle

    def health(self) -> dict[str, Any]:
        """Cache backend, configured sources and diagnostics counters."""
        return {
            "cache_backend": self._cache.backend_name,
            "local_cache_entries": self._cache.local_size,
            "sources": {
                source_type.value: {
                    "weight": source.weight,
                    "cap": source.cap,
                    "threshold": source.threshold,
                }
                for source_type, source in self._sources.items()
            },
            "diagnostics": self._diagnostics.snapshot(),
        }

    async def aclose(self) -> None:
        await self._cache.aclose()

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    def _coerce_options(options: QueryOptions | Mapping[str, Any] | None) -> QueryOptions:
        if options is None:
            return QueryOptions()
        if isinstance(options, QueryOptions):
            return options
        return QueryOptions.model_validate(options)

    def _requested_types(self, options: QueryOptions) -> list[SourceType]:
        requested = (
            set(options.context_types)
            if options.context_types is not None
            else {SourceType(t) for t in self._settings.default_context_types}
        )
        # Enum order fixes retrieval order, which fixes tie-breaks
        return [source_type for source_type in SourceType if source_type in requested]

    async def _retrieve_all(
        self,
        context_types: list[SourceType],
        query_vector: list[float],
        tenant_id: str,
        entities: EntitySet,
        options: QueryOptions,
        conversation_id: str | None,
    ) -> tuple[list[EvidenceItem], list[SourceType]]:
        """Evidence from every selected source, and the sources that failed."""
        selected = []
        for source_type in context_types:
            if source_type in self._sources:
                selected.append(source_type)
            else:
                logger.warning("No retrieval source configured for %s", source_type.value)

        results = await asyncio.gather(
            *(
                self._sources[source_type].retrieve_result(
                    query_vector, tenant_id, entities, options, conversation_id,
                )
                for source_type in selected
            ),
            return_exceptions=True,
        )

        evidence: list[EvidenceItem] = []
        failed: list[SourceType] = []
        for source_type, result in zip(selected, results, strict=True):
            if isinstance(result, Exception):
                reason = f"{type(result).__name__}: {result}"
                logger.warning("[%s] Source raised, ignoring: %s", source_type.value, reason)
                self._diagnostics.record_source_failure(source_type.value, reason)
                failed.append(source_type)
                continue
            if isinstance(result, BaseException):
                raise result
            if result.failed:
                failed.append(source_type)
            evidence.extend(result.items)
        return evidence, failed


# ---------------------------------------------------------------------------
# Outer-Layer Helper
# ---------------------------------------------------------------------------


async def assemble_or_unavailable(
    assembler: ContextAssembler,
    query: str,
    tenant_id: str,
    conversation_id: str | None = None,
    options: QueryOptions | Mapping[str, Any] | None = None,
) -> ContextBundle | ContextUnavailableResponse:
    """
    Like assemble(), but a fatal failure becomes an explicit
    "context unavailable" response instead of an exception, so the answer
    generator can refuse rather than answer from no evidence.
    """
    try:
        return await assembler.assemble(query, tenant_id, conversation_id, options)
    except ContextUnavailable as exc:
        return ContextUnavailableResponse(
            query=query,
            tenant_id=tenant_id,
            reason=str(exc.cause or exc),
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


async def create_context_assembler(settings: Settings | None = None) -> ContextAssembler:
    """
    Build the assembler and everything it depends on.

    Called once at process start; the returned assembler is shared by all
    requests. Must run inside an event loop (the cache pings Redis).
    """
    settings = settings or get_settings()
    diagnostics = Diagnostics()
    cache = await create_cache(settings, diagnostics)

    embedder = EmbeddingGateway(
        OpenAIEmbeddingProvider(settings), cache, settings, diagnostics,
    )
    store = PgVectorStore(settings=settings)
    insights = PgSpendingInsights(settings=settings)

    sources: dict[SourceType, RetrievalSource] = {
        SourceType.RECEIPTS: ReceiptsSource(store, cache, settings, diagnostics),
        SourceType.WARRANTIES: WarrantiesSource(store, cache, settings, diagnostics),
        SourceType.CONVERSATIONS: ConversationsSource(store, cache, settings, diagnostics),
        SourceType.ANALYTICS: AnalyticsSource(insights, cache, settings, diagnostics),
    }
    logger.info(
        "Context assembler ready (cache=%s, sources=%s)",
        cache.backend_name, [t.value for t in sources],
    )
    return ContextAssembler(cache, embedder, sources, settings, diagnostics)
