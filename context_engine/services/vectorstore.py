# =============================================================================
# Vector Store & Spending Insights — Persistence Adapters
# =============================================================================
#
# Retrieval sources depend on two read-only collaborators:
#
#   VectorStore (Protocol)
#   └── PgVectorStore          — pgvector similarity search via SQL functions
#   SpendingInsightsProvider (Protocol)
#   └── PgSpendingInsights     — spending-insight aggregation SQL function
#
# The similarity search for each source category is a PostgreSQL function
# that already joins metadata, applies the tenant scope and the similarity
# threshold, and returns rows with a `similarity_score` in [0, 1]:
#
#   receipts       search_receipts_advanced
#   warranties     search_warranties_similarity
#   conversations  get_conversation_context
#
# Functions are called with named arguments so each source only passes the
# filters it understands; argument names are checked against a fixed list.
#
# DESIGN DECISION: Protocol (structural typing) over ABC, so tests can pass
# any object with a matching `search()` coroutine.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from pgvector.sqlalchemy import Vector
from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from context_engine.config import Settings, get_settings
from context_engine.db.engine import get_async_session_factory, read_session
from context_engine.models.context import SourceType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol Definitions
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Filtered top-K similarity search scoped to one tenant."""

    async def search(
        self,
        source: SourceType,
        query_embedding: list[float],
        tenant_id: str,
        *,
        threshold: float,
        limit: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """
        Return up to `limit` rows with similarity_score >= threshold,
        sorted by similarity (highest first).
        """
        ...


class SpendingInsightsProvider(Protocol):
    """Spending-pattern aggregation over a recent window."""

    async def spending_insights(
        self,
        tenant_id: str,
        *,
        period_days: int,
        insight_types: list[str],
    ) -> list[dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# SQL Function Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchFunction:
    """A similarity-search SQL function and the arguments it accepts."""

    name: str
    threshold_param: str
    limit_param: str
    filter_params: frozenset[str]


SEARCH_FUNCTIONS: dict[SourceType, SearchFunction] = {
    SourceType.RECEIPTS: SearchFunction(
        name="search_receipts_advanced",
        threshold_param="match_threshold",
        limit_param="match_count",
        filter_params=frozenset({
            "date_range_start", "date_range_end", "category_ids",
            "min_amount", "max_amount", "merchant_filter", "similarity_metric",
        }),
    ),
    SourceType.WARRANTIES: SearchFunction(
        name="search_warranties_similarity",
        threshold_param="match_threshold",
        limit_param="match_count",
        filter_params=frozenset({"include_expired", "product_brand_filter"}),
    ),
    SourceType.CONVERSATIONS: SearchFunction(
        name="get_conversation_context",
        threshold_param="similarity_threshold",
        limit_param="context_window_size",
        filter_params=frozenset({
            "conversation_id_param", "include_related_conversations",
        }),
    ),
}


# ---------------------------------------------------------------------------
# Implementation: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed similarity search through the per-source SQL functions.

    A `category_name` filter is resolved to the tenant's category ids
    before the search, since the receipt function filters by id.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_async_session_factory(self._settings)
        return self._session_factory

    async def search(
        self,
        source: SourceType,
        query_embedding: list[float],
        tenant_id: str,
        *,
        threshold: float,
        limit: int,
        filters: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        function = SEARCH_FUNCTIONS.get(source)
        if function is None:
            raise ValueError(f"No similarity search function for {source.value}")

        filters = {k: v for k, v in (filters or {}).items() if v is not None}
        category_name = filters.pop("category_name", None)

        unknown = set(filters) - function.filter_params
        if unknown:
            raise ValueError(
                f"Unsupported filters for {function.name}: {sorted(unknown)}"
            )

        params: dict[str, Any] = {
            "query_embedding": query_embedding,
            "user_id_param": tenant_id,
            function.threshold_param: threshold,
            # Hard ceiling on rows pulled from the store per call
            function.limit_param: min(limit, self._settings.max_items_ceiling),
            **filters,
        }

        async with read_session(self._factory()) as session:
            if category_name:
                category_ids = await self._category_ids(
                    session, tenant_id, category_name,
                )
                if category_ids:
                    params["category_ids"] = category_ids

            stmt = self._function_call(function.name, params)
            result = await session.execute(stmt, params)
            rows = [dict(row._mapping) for row in result]

        logger.debug(
            "%s returned %d rows (tenant=%s, threshold=%.2f, limit=%d)",
            function.name, len(rows), tenant_id, threshold, limit,
        )
        return rows

    def _function_call(self, name: str, params: dict[str, Any]):
        arguments = ", ".join(f"{param} => :{param}" for param in params)
        return text(f"SELECT * FROM {name}({arguments})").bindparams(
            bindparam(
                "query_embedding",
                type_=Vector(self._settings.embedding_dimensions),
            ),
        )

    @staticmethod
    async def _category_ids(
        session: AsyncSession, tenant_id: str, category_name: str,
    ) -> list[Any]:
        result = await session.execute(
            text(
                "SELECT id FROM categories "
                "WHERE user_id = :tenant_id AND lower(name) = lower(:name)"
            ),
            {"tenant_id": tenant_id, "name": category_name},
        )
        return [row.id for row in result]


class PgSpendingInsights:
    """Spending insights from the generate_spending_insights SQL function."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory

    async def spending_insights(
        self,
        tenant_id: str,
        *,
        period_days: int,
        insight_types: list[str],
    ) -> list[dict[str, Any]]:
        factory = self._session_factory or get_async_session_factory(self._settings)
        async with read_session(factory) as session:
            result = await session.execute(
                text(
                    "SELECT * FROM generate_spending_insights("
                    "user_id_param => :user_id_param, "
                    "analysis_period_days => :analysis_period_days, "
                    "insight_types => :insight_types)"
                ),
                {
                    "user_id_param": tenant_id,
                    "analysis_period_days": period_days,
                    "insight_types": insight_types,
                },
            )
            rows = [dict(row._mapping) for row in result]

        logger.debug(
            "generate_spending_insights returned %d rows (tenant=%s, days=%d)",
            len(rows), tenant_id, period_days,
        )
        return rows
