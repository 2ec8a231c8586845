# =============================================================================
# Analytics Source — Spending Insights as Evidence
# =============================================================================
#
# Unlike the other sources this one does not run a similarity search: it
# asks the persistence layer for spending insights over a recent window
# (default 90 days, "patterns" and "trends"). An insight's confidence score
# plays the role of the similarity score, so the threshold (0.55), weight
# (0.1) and cap (3) apply exactly as for the vector-backed sources.
#
# Insight ids are positional ("insight_0", "insight_1", ...) because the
# aggregation function returns computed rows without stable keys.
# =============================================================================

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from context_engine.models.context import (
    EntitySet,
    EvidenceItem,
    QueryOptions,
    SourceType,
)
from context_engine.services.vectorstore import SpendingInsightsProvider
from context_engine.sources.base import RetrievalSource, jsonable


class AnalyticsSource(RetrievalSource):
    """Evidence from a SpendingInsightsProvider rather than a VectorStore."""

    source_type = SourceType.ANALYTICS

    _store: SpendingInsightsProvider

    def build_filters(
        self,
        entities: EntitySet,
        options: QueryOptions,
        conversation_id: str | None,
    ) -> dict[str, Any]:
        return {
            "analysis_period_days": self._settings.analytics_period_days,
            "insight_types": list(self._settings.analytics_insight_types),
        }

    async def fetch_rows(
        self,
        query_vector: list[float],
        tenant_id: str,
        threshold: float,
        filters: dict[str, Any],
    ) -> list[dict[str, Any]]:
        rows = await self._store.spending_insights(
            tenant_id,
            period_days=filters["analysis_period_days"],
            insight_types=filters["insight_types"],
        )
        if not isinstance(rows, list):
            return rows
        return [
            {**row, "insight_id": f"insight_{index}"} if isinstance(row, Mapping) else row
            for index, row in enumerate(rows)
        ]

    def similarity_of(self, row: Mapping[str, Any]) -> Any:
        return row.get("confidence_score")

    def to_evidence(self, row: Mapping[str, Any], similarity: float) -> EvidenceItem:
        title = row.get("insight_title")
        description = row.get("insight_description")
        return EvidenceItem(
            source_type=self.source_type,
            source_id=row["insight_id"],
            similarity_score=similarity,
            relevance_score=self.relevance(similarity),
            summary=f"{title}: {description}",
            content={
                "insight_type": row.get("insight_type"),
                "title": title,
                "description": description,
                "recommendations": jsonable(row.get("action_recommendations") or []),
            },
            snippet=description,
            metadata={
                "confidence_score": jsonable(row.get("confidence_score")),
                "supporting_data": jsonable(row.get("supporting_data")),
            },
        )
