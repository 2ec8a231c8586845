# =============================================================================
# Receipts Source
# =============================================================================
#
# Filters understood: merchant, target amount (±10% band), amount range,
# explicit date range, relative time window (months back from today),
# category name. Weight 0.4 / cap 8 / threshold 0.65 by default.
#
# Also home to duplicate grouping, which only makes sense for receipts:
# same merchant, amounts within $1.00, purchase dates within one day.
# =============================================================================

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import date, timedelta
from typing import Any

from context_engine.models.context import (
    EntitySet,
    EvidenceItem,
    QueryOptions,
    SourceType,
)
from context_engine.sources.base import RetrievalSource, jsonable, truncate

# Single amounts are widened to a band so "$45" still matches $44.10
TARGET_AMOUNT_TOLERANCE = 0.10

DUPLICATE_AMOUNT_TOLERANCE = 1.00
DUPLICATE_DAY_TOLERANCE = 1


class ReceiptsSource(RetrievalSource):
    source_type = SourceType.RECEIPTS

    def __init__(self, *args: Any, today: Callable[[], date] = date.today, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._today = today

    def build_filters(
        self,
        entities: EntitySet,
        options: QueryOptions,
        conversation_id: str | None,
    ) -> dict[str, Any]:
        filters: dict[str, Any] = {"similarity_metric": "cosine"}

        if entities.merchant:
            filters["merchant_filter"] = entities.merchant

        if entities.amount_range is not None:
            filters["min_amount"] = entities.amount_range.min
            filters["max_amount"] = entities.amount_range.max
        elif entities.target_amount is not None:
            filters["min_amount"] = round(
                entities.target_amount * (1 - TARGET_AMOUNT_TOLERANCE), 2,
            )
            filters["max_amount"] = round(
                entities.target_amount * (1 + TARGET_AMOUNT_TOLERANCE), 2,
            )

        if entities.date_range is not None:
            filters["date_range_start"] = entities.date_range.start
            filters["date_range_end"] = entities.date_range.end
        elif entities.time_range is not None:
            today = self._today()
            filters["date_range_start"] = today - timedelta(
                days=round(entities.time_range * 30),
            )
            filters["date_range_end"] = today

        if entities.category:
            filters["category_name"] = entities.category

        return filters

    def to_evidence(self, row: Mapping[str, Any], similarity: float) -> EvidenceItem:
        merchant = row.get("merchant_name")
        amount = jsonable(row.get("total_amount"))
        purchase_date = jsonable(row.get("purchase_date"))
        return EvidenceItem(
            source_type=self.source_type,
            source_id=str(row["receipt_id"]),
            similarity_score=similarity,
            relevance_score=self.relevance(similarity),
            summary=f"Receipt from {merchant} on {purchase_date} for ${amount}",
            content={
                "merchant_name": merchant,
                "total_amount": amount,
                "purchase_date": purchase_date,
                "category_name": row.get("category_name"),
                "tags": jsonable(row.get("tags") or []),
                "is_business_expense": row.get("is_business_expense"),
                "location_address": row.get("location_address"),
            },
            snippet=truncate(row.get("content_text"), 200),
            metadata={
                "confidence_score": jsonable(row.get("confidence_score")),
                "similarity_metric": "cosine",
            },
        )


# ---------------------------------------------------------------------------
# Duplicate Grouping
# ---------------------------------------------------------------------------


def _as_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _is_potential_duplicate(a: Mapping[str, Any], b: Mapping[str, Any]) -> bool:
    merchant_a = (a.get("merchant_name") or "").strip().lower()
    merchant_b = (b.get("merchant_name") or "").strip().lower()
    if not merchant_a or merchant_a != merchant_b:
        return False

    try:
        amount_diff = abs(float(a["total_amount"]) - float(b["total_amount"]))
    except (KeyError, TypeError, ValueError):
        return False
    if amount_diff > DUPLICATE_AMOUNT_TOLERANCE:
        return False

    date_a = _as_date(a.get("purchase_date"))
    date_b = _as_date(b.get("purchase_date"))
    if date_a is None or date_b is None:
        return False
    return abs((date_a - date_b).days) <= DUPLICATE_DAY_TOLERANCE


def group_potential_duplicates(items: Sequence[EvidenceItem]) -> list[list[str]]:
    """
    Group receipt evidence that likely describes the same purchase.

    Each receipt joins the first group whose founding receipt it matches;
    groups of one are dropped. Non-receipt items are ignored.
    """
    receipts = [i for i in items if i.source_type is SourceType.RECEIPTS]
    groups: list[list[EvidenceItem]] = []
    for item in receipts:
        for group in groups:
            if _is_potential_duplicate(group[0].content, item.content):
                group.append(item)
                break
        else:
            groups.append([item])

    return [[i.source_id for i in group] for group in groups if len(group) > 1]
