# =============================================================================
# Warranties Source
# =============================================================================
#
# Filters understood: product brand, expired-warranty inclusion flag.
# Weight 0.3 / cap 5 / threshold 0.70 by default.
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
from context_engine.sources.base import RetrievalSource, jsonable, truncate


class WarrantiesSource(RetrievalSource):
    source_type = SourceType.WARRANTIES

    def build_filters(
        self,
        entities: EntitySet,
        options: QueryOptions,
        conversation_id: str | None,
    ) -> dict[str, Any]:
        filters: dict[str, Any] = {"include_expired": options.include_expired}
        if entities.brand:
            filters["product_brand_filter"] = entities.brand
        return filters

    def to_evidence(self, row: Mapping[str, Any], similarity: float) -> EvidenceItem:
        product = row.get("product_name")
        brand = row.get("product_brand")
        end_date = jsonable(row.get("warranty_end_date"))
        return EvidenceItem(
            source_type=self.source_type,
            source_id=str(row["warranty_id"]),
            similarity_score=similarity,
            relevance_score=self.relevance(similarity),
            summary=f"Warranty for {product} ({brand}) expires {end_date}",
            content={
                "product_name": product,
                "product_brand": brand,
                "product_model": row.get("product_model"),
                "warranty_end_date": end_date,
                "warranty_status": row.get("warranty_status"),
                "days_until_expiry": row.get("days_until_expiry"),
            },
            snippet=truncate(row.get("content_text"), 200),
            metadata={
                "support_contact": jsonable(row.get("support_contact")),
                "warranty_status": row.get("warranty_status"),
            },
        )
