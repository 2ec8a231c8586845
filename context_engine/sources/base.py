# =============================================================================
# Retrieval Source — Shared Contract
# =============================================================================
#
# Every evidence category implements the same pipeline:
#
#   build_filters(entities, options)     — EntitySet → store-level filters
#   cache check (short TTL)              — key: vector prefix + tenant + filters
#   fetch_rows(...)                      — one store call, per-call timeout
#   to_evidence(row, similarity)         — store row → EvidenceItem
#
# and the same guarantees:
#   - similarity_score >= threshold for every returned item
#   - relevance_score = similarity_score × weight (weights in (0, 1])
#   - at most `cap` items, highest similarity first
#   - any failure (store error, timeout, malformed rows) → [] plus a log line
#     and a diagnostics record; retrieve() never raises. retrieve_result()
#     also reports whether the store call failed, so callers can avoid
#     caching anything built from a degraded result.
#
# DESIGN DECISION: Abstract base class rather than Protocol.
# The pipeline above is shared code; subclasses only supply the three
# category-specific hooks. The assembler iterates a fixed mapping of
# SourceType → RetrievalSource instead of branching per category.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID

from context_engine.config import Settings, get_settings
from context_engine.errors import RetrievalError
from context_engine.models.context import (
    EntitySet,
    EvidenceItem,
    QueryOptions,
    SourceType,
)
from context_engine.services.cache import CacheLayer, TtlClass
from context_engine.services.diagnostics import Diagnostics
from context_engine.services.vectorstore import SpendingInsightsProvider, VectorStore

logger = logging.getLogger(__name__)

# Leading embedding dimensions that go into the retrieval cache key
_VECTOR_KEY_DIMENSIONS = 10


def jsonable(value: Any) -> Any:
    """
    Convert database values into JSON-native types.

    Evidence content is cached as JSON, so a fresh item and its cached copy
    must hold the same primitive values (Decimal → float, dates → ISO text,
    UUID → str).
    """
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return value


def truncate(text: str | None, length: int) -> str | None:
    if text is None:
        return None
    return text[:length]


@dataclass(frozen=True)
class RetrievalResult:
    """Items from one source, plus whether the store call failed."""

    items: list[EvidenceItem] = field(default_factory=list)
    failed: bool = False


class RetrievalSource(ABC):
    """Base class for one evidence category."""

    source_type: ClassVar[SourceType]

    def __init__(
        self,
        store: VectorStore | SpendingInsightsProvider,
        cache: CacheLayer,
        settings: Settings | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._settings = settings or get_settings()
        self._diagnostics = diagnostics or Diagnostics()

    # -----------------------------------------------------------------------
    # Per-source configuration
    # -----------------------------------------------------------------------

    @property
    def threshold(self) -> float:
        return self._settings.source_thresholds[self.source_type.value]

    @property
    def cap(self) -> int:
        return self._settings.source_caps[self.source_type.value]

    @property
    def weight(self) -> float:
        return self._settings.source_weights[self.source_type.value]

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def retrieve(
        self,
        query_vector: list[float],
        tenant_id: str,
        entities: EntitySet | None = None,
        options: QueryOptions | None = None,
        conversation_id: str | None = None,
    ) -> list[EvidenceItem]:
        """
        Return up to `cap` evidence items for the query vector.

        options.threshold, when set, replaces this source's threshold.
        Never raises: failures yield an empty list.
        """
        result = await self.retrieve_result(
            query_vector, tenant_id, entities, options, conversation_id,
        )
        return result.items

    async def retrieve_result(
        self,
        query_vector: list[float],
        tenant_id: str,
        entities: EntitySet | None = None,
        options: QueryOptions | None = None,
        conversation_id: str | None = None,
    ) -> RetrievalResult:
        """Like retrieve(), but a failure is flagged instead of hidden."""
        entities = entities or EntitySet()
        options = options or QueryOptions()
        threshold = (
            options.threshold if options.threshold is not None else self.threshold
        )
        source = self.source_type.value

        try:
            filters = self.build_filters(entities, options, conversation_id)
        except Exception as exc:
            # Entity → filter mapping is best-effort; search unfiltered
            logger.warning("[%s] Ignoring filters: %s", source, exc)
            filters = {}

        key = self._cache.key(
            "search",
            {
                "source": source,
                "vector": query_vector[:_VECTOR_KEY_DIMENSIONS],
                "tenant": tenant_id,
                "filters": filters,
                "threshold": threshold,
                "cap": self.cap,
            },
        )
        cached = await self._cache.get(key)
        if cached is not None:
            try:
                return RetrievalResult([EvidenceItem.model_validate(item) for item in cached])
            except (TypeError, ValueError) as exc:
                logger.warning("[%s] Discarding malformed cached results: %s", source, exc)

        try:
            rows = await asyncio.wait_for(
                self.fetch_rows(query_vector, tenant_id, threshold, filters),
                timeout=self._settings.retrieval_timeout_seconds,
            )
            items = self._to_items(rows, threshold)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            logger.warning("[%s] Retrieval failed, contributing no evidence: %s", source, reason)
            self._diagnostics.record_source_failure(source, reason)
            return RetrievalResult(failed=True)

        # Failures are never cached; an empty successful result is
        await self._cache.put(
            key,
            [item.model_dump(mode="json") for item in items],
            TtlClass.SHORT,
        )
        logger.debug(
            "[%s] %d items (threshold=%.2f, cap=%d)",
            source, len(items), threshold, self.cap,
        )
        return RetrievalResult(items)

    # -----------------------------------------------------------------------
    # Hooks
    # -----------------------------------------------------------------------

    @abstractmethod
    def build_filters(
        self,
        entities: EntitySet,
        options: QueryOptions,
        conversation_id: str | None,
    ) -> dict[str, Any]:
        """Map the entity fields this source understands to store filters."""

    @abstractmethod
    def to_evidence(self, row: Mapping[str, Any], similarity: float) -> EvidenceItem:
        """Translate one store row into an EvidenceItem."""

    async def fetch_rows(
        self,
        query_vector: list[float],
        tenant_id: str,
        threshold: float,
        filters: dict[str, Any],
    ) -> list[dict[str, Any]]:
        return await self._store.search(
            self.source_type,
            query_vector,
            tenant_id,
            threshold=threshold,
            limit=self.cap,
            filters=filters,
        )

    def similarity_of(self, row: Mapping[str, Any]) -> Any:
        return row.get("similarity_score")

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def relevance(self, similarity: float) -> float:
        return similarity * self.weight

    def _to_items(self, rows: Any, threshold: float) -> list[EvidenceItem]:
        source = self.source_type.value
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise RetrievalError(source, f"expected a list of rows, got {type(rows).__name__}")

        scored: list[tuple[float, Mapping[str, Any]]] = []
        for row in rows:
            if not isinstance(row, Mapping):
                raise RetrievalError(source, f"row is not a mapping: {row!r}")
            raw = self.similarity_of(row)
            try:
                similarity = float(raw)
            except (TypeError, ValueError):
                raise RetrievalError(source, f"invalid similarity score: {raw!r}") from None
            similarity = min(max(similarity, 0.0), 1.0)
            if similarity < threshold:
                continue
            scored.append((similarity, row))

        # Stable: equal similarities keep store order
        scored.sort(key=lambda pair: pair[0], reverse=True)

        items = []
        for similarity, row in scored[: self.cap]:
            try:
                items.append(self.to_evidence(row, similarity))
            except (KeyError, TypeError, ValueError) as exc:
                raise RetrievalError(source, f"malformed row: {exc}") from exc
        return items
