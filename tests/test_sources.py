# =============================================================================
# Unit Tests — Retrieval Sources
# =============================================================================
#
# Each source is exercised against an in-test fake store that records its
# calls. Covers thresholds, caps, weights, filter construction, the
# short-TTL cache and failure absorption.
# =============================================================================

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal
from uuid import UUID

from context_engine.config import Settings
from context_engine.models.context import (
    AmountRange,
    DateRange,
    EntitySet,
    EvidenceItem,
    QueryOptions,
    SourceType,
)
from context_engine.services.cache import CacheLayer, InMemoryCacheBackend
from context_engine.services.diagnostics import Diagnostics
from context_engine.sources import (
    AnalyticsSource,
    ConversationsSource,
    ReceiptsSource,
    WarrantiesSource,
    group_potential_duplicates,
)
from context_engine.sources.base import jsonable

VECTOR = [0.1] * 16
TODAY = date(2024, 6, 15)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeStore:
    """VectorStore double returning canned rows per source."""

    def __init__(self, rows=None, error: Exception | None = None, delay: float = 0.0):
        self.rows = rows or {}
        self.error = error
        self.delay = delay
        self.calls: list[dict] = []

    async def search(self, source, query_embedding, tenant_id, *, threshold, limit, filters=None):
        self.calls.append({
            "source": source,
            "tenant_id": tenant_id,
            "threshold": threshold,
            "limit": limit,
            "filters": filters,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [dict(row) for row in self.rows.get(source, [])]


class FakeInsights:
    def __init__(self, rows):
        self.rows = rows
        self.calls: list[dict] = []

    async def spending_insights(self, tenant_id, *, period_days, insight_types):
        self.calls.append({
            "tenant_id": tenant_id,
            "period_days": period_days,
            "insight_types": insight_types,
        })
        return [dict(row) for row in self.rows]


def receipt_row(i: int, similarity: float, **overrides) -> dict:
    row = {
        "receipt_id": f"r{i}",
        "merchant_name": "Starbucks",
        "total_amount": Decimal("5.45"),
        "purchase_date": date(2024, 5, i % 28 + 1),
        "category_name": "Food",
        "similarity_score": similarity,
        "content_text": "Merchant: Starbucks\nAmount: $5.45",
        "confidence_score": 0.92,
        "tags": ["coffee"],
        "is_business_expense": False,
        "location_address": None,
    }
    row.update(overrides)
    return row


def _build(source_cls, store, diagnostics=None, **settings_overrides):
    settings = Settings(**settings_overrides)
    cache = CacheLayer(InMemoryCacheBackend(), settings=settings)
    kwargs = {"today": lambda: TODAY} if source_cls is ReceiptsSource else {}
    return source_cls(store, cache, settings, diagnostics or Diagnostics(), **kwargs)


# ---------------------------------------------------------------------------
# Test: Shared Contract (via Receipts)
# ---------------------------------------------------------------------------


class TestRetrievalContract:
    """Threshold, weight, cap, cache and failure behaviour."""

    def test_below_threshold_discarded(self):
        store = FakeStore({SourceType.RECEIPTS: [
            receipt_row(1, 0.9), receipt_row(2, 0.66), receipt_row(3, 0.5),
        ]})
        items = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))
        assert [i.source_id for i in items] == ["r1", "r2"]

    def test_relevance_is_weighted_similarity(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 0.9)]})
        (item,) = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))
        assert item.similarity_score == 0.9
        assert item.relevance_score == 0.9 * 0.4

    def test_relevance_never_exceeds_similarity(self):
        rows = [receipt_row(i, 0.65 + i * 0.01) for i in range(8)]
        store = FakeStore({SourceType.RECEIPTS: rows})
        items = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))
        assert items
        for item in items:
            assert item.relevance_score <= item.similarity_score
            assert item.similarity_score >= 0.65

    def test_cap_applied(self):
        rows = [receipt_row(i, 0.99 - i * 0.01) for i in range(12)]
        store = FakeStore({SourceType.RECEIPTS: rows})
        items = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))
        assert len(items) == 8
        assert store.calls[0]["limit"] == 8
        assert store.calls[0]["threshold"] == 0.65

    def test_sorted_by_similarity(self):
        store = FakeStore({SourceType.RECEIPTS: [
            receipt_row(1, 0.7), receipt_row(2, 0.95), receipt_row(3, 0.8),
        ]})
        items = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))
        assert [i.source_id for i in items] == ["r2", "r3", "r1"]

    def test_similarity_clamped_to_one(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 1.0000002)]})
        (item,) = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))
        assert item.similarity_score == 1.0

    def test_threshold_override(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 0.9), receipt_row(2, 0.8)]})
        source = _build(ReceiptsSource, store)
        items = _run(source.retrieve(VECTOR, "t1", options=QueryOptions(threshold=0.85)))
        assert [i.source_id for i in items] == ["r1"]
        assert store.calls[0]["threshold"] == 0.85

    def test_second_call_hits_cache(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 0.9)]})
        source = _build(ReceiptsSource, store)

        async def scenario():
            first = await source.retrieve(VECTOR, "t1")
            second = await source.retrieve(VECTOR, "t1")
            return first, second

        first, second = _run(scenario())
        assert [i.model_dump() for i in first] == [i.model_dump() for i in second]
        assert len(store.calls) == 1

    def test_cache_keyed_by_tenant(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 0.9)]})
        source = _build(ReceiptsSource, store)

        async def scenario():
            await source.retrieve(VECTOR, "t1")
            await source.retrieve(VECTOR, "t2")

        _run(scenario())
        assert [c["tenant_id"] for c in store.calls] == ["t1", "t2"]

    def test_cache_keyed_by_filters(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 0.9)]})
        source = _build(ReceiptsSource, store)

        async def scenario():
            await source.retrieve(VECTOR, "t1", EntitySet(merchant="Starbucks"))
            await source.retrieve(VECTOR, "t1", EntitySet(merchant="Target"))

        _run(scenario())
        assert len(store.calls) == 2

    def test_store_error_yields_empty_list(self):
        diagnostics = Diagnostics()
        source = _build(
            ReceiptsSource, FakeStore(error=ConnectionError("db down")), diagnostics,
        )
        assert _run(source.retrieve(VECTOR, "t1")) == []
        assert diagnostics.source_failures["receipts"] == 1
        assert "db down" in diagnostics.recent_failures[0].reason

    def test_failures_not_cached(self):
        store = FakeStore(error=ConnectionError("db down"))
        source = _build(ReceiptsSource, store)

        async def scenario():
            await source.retrieve(VECTOR, "t1")
            store.error = None
            store.rows = {SourceType.RECEIPTS: [receipt_row(1, 0.9)]}
            return await source.retrieve(VECTOR, "t1")

        assert len(_run(scenario())) == 1

    def test_retrieve_result_flags_failure(self):
        source = _build(ReceiptsSource, FakeStore(error=ConnectionError("db down")))
        result = _run(source.retrieve_result(VECTOR, "t1"))
        assert result.failed
        assert result.items == []

    def test_retrieve_result_empty_success_not_flagged(self):
        result = _run(_build(ReceiptsSource, FakeStore()).retrieve_result(VECTOR, "t1"))
        assert not result.failed

    def test_timeout_yields_empty_list(self):
        diagnostics = Diagnostics()
        source = _build(
            ReceiptsSource, FakeStore(delay=1.0), diagnostics,
            retrieval_timeout_seconds=0.01,
        )
        assert _run(source.retrieve(VECTOR, "t1")) == []
        assert diagnostics.source_failures["receipts"] == 1

    def test_malformed_rows_yield_empty_list(self):
        store = FakeStore({SourceType.RECEIPTS: [{"receipt_id": "r1"}]})
        assert _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1")) == []

    def test_missing_id_yields_empty_list(self):
        row = receipt_row(1, 0.9)
        del row["receipt_id"]
        store = FakeStore({SourceType.RECEIPTS: [row]})
        assert _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1")) == []


# ---------------------------------------------------------------------------
# Test: Receipts
# ---------------------------------------------------------------------------


class TestReceiptsSource:
    def _filters(self, entities: EntitySet) -> dict:
        return _build(ReceiptsSource, FakeStore()).build_filters(
            entities, QueryOptions(), None,
        )

    def test_merchant_filter(self):
        assert self._filters(EntitySet(merchant="Starbucks"))["merchant_filter"] == "Starbucks"

    def test_target_amount_band(self):
        filters = self._filters(EntitySet(target_amount=50.0))
        assert filters["min_amount"] == 45.0
        assert filters["max_amount"] == 55.0

    def test_amount_range(self):
        filters = self._filters(EntitySet(amount_range=AmountRange(min=10, max=20)))
        assert (filters["min_amount"], filters["max_amount"]) == (10, 20)

    def test_explicit_date_range(self):
        day = date(2024, 3, 2)
        filters = self._filters(EntitySet(date_range=DateRange(start=day, end=day)))
        assert filters["date_range_start"] == filters["date_range_end"] == day

    def test_time_range_counts_back_from_today(self):
        filters = self._filters(EntitySet(time_range=1.0))
        assert filters["date_range_start"] == date(2024, 5, 16)
        assert filters["date_range_end"] == TODAY

    def test_category(self):
        assert self._filters(EntitySet(category="groceries"))["category_name"] == "groceries"

    def test_no_entities_only_metric(self):
        assert self._filters(EntitySet()) == {"similarity_metric": "cosine"}

    def test_evidence_content_is_json_native(self):
        row = receipt_row(1, 0.9, receipt_id=UUID("12345678-1234-5678-1234-567812345678"))
        store = FakeStore({SourceType.RECEIPTS: [row]})
        (item,) = _run(_build(ReceiptsSource, store).retrieve(VECTOR, "t1"))

        assert item.source_id == "12345678-1234-5678-1234-567812345678"
        assert item.content["total_amount"] == 5.45
        assert item.content["purchase_date"] == "2024-05-02"
        assert item.summary == "Receipt from Starbucks on 2024-05-02 for $5.45"
        assert item.snippet.startswith("Merchant: Starbucks")

    def test_cached_copy_equals_fresh(self):
        store = FakeStore({SourceType.RECEIPTS: [receipt_row(1, 0.9)]})
        source = _build(ReceiptsSource, store)

        async def scenario():
            return await source.retrieve(VECTOR, "t1"), await source.retrieve(VECTOR, "t1")

        fresh, cached = _run(scenario())
        assert [i.model_dump() for i in fresh] == [i.model_dump() for i in cached]


# ---------------------------------------------------------------------------
# Test: Warranties
# ---------------------------------------------------------------------------


class TestWarrantiesSource:
    def _row(self, similarity: float = 0.8) -> dict:
        return {
            "warranty_id": "w1",
            "product_name": "QLED TV",
            "product_brand": "Samsung",
            "product_model": "Q80",
            "warranty_end_date": date(2025, 1, 31),
            "warranty_status": "active",
            "similarity_score": similarity,
            "content_text": "Product: QLED TV",
            "days_until_expiry": 230,
            "support_contact": {"phone": "1-800-SAMSUNG"},
        }

    def test_filters(self):
        source = _build(WarrantiesSource, FakeStore())
        filters = source.build_filters(
            EntitySet(brand="Samsung"), QueryOptions(include_expired=True), None,
        )
        assert filters == {"include_expired": True, "product_brand_filter": "Samsung"}

    def test_default_excludes_expired(self):
        source = _build(WarrantiesSource, FakeStore())
        assert source.build_filters(EntitySet(), QueryOptions(), None) == {
            "include_expired": False,
        }

    def test_threshold_weight_and_summary(self):
        store = FakeStore({SourceType.WARRANTIES: [self._row(0.8), {**self._row(0.69), "warranty_id": "w2"}]})
        items = _run(_build(WarrantiesSource, store).retrieve(VECTOR, "t1"))

        assert [i.source_id for i in items] == ["w1"]
        assert items[0].relevance_score == 0.8 * 0.3
        assert items[0].summary == "Warranty for QLED TV (Samsung) expires 2025-01-31"
        assert items[0].content["days_until_expiry"] == 230
        assert store.calls[0]["limit"] == 5


# ---------------------------------------------------------------------------
# Test: Conversations
# ---------------------------------------------------------------------------


class TestConversationsSource:
    def test_filters_default_include_related(self):
        source = _build(ConversationsSource, FakeStore())
        assert source.build_filters(EntitySet(), QueryOptions(), "c1") == {
            "conversation_id_param": "c1",
            "include_related_conversations": True,
        }

    def test_include_related_override(self):
        source = _build(ConversationsSource, FakeStore())
        filters = source.build_filters(EntitySet(), QueryOptions(include_related=False), None)
        assert filters["include_related_conversations"] is False

    def test_summary_truncates_long_messages(self):
        row = {
            "message_id": "m1",
            "conversation_id": "c1",
            "content_text": "x" * 300,
            "message_type": "user",
            "similarity_score": 0.7,
            "sequence_number": 4,
            "created_at": date(2024, 6, 1),
        }
        store = FakeStore({SourceType.CONVERSATIONS: [row]})
        (item,) = _run(
            _build(ConversationsSource, store).retrieve(VECTOR, "t1", conversation_id="c1")
        )
        assert item.summary == "Previous user: " + "x" * 100 + "..."
        assert item.snippet == "x" * 300
        assert item.relevance_score == 0.7 * 0.2
        assert store.calls[0]["filters"]["conversation_id_param"] == "c1"


# ---------------------------------------------------------------------------
# Test: Analytics
# ---------------------------------------------------------------------------


class TestAnalyticsSource:
    def _insight(self, confidence: float, title: str) -> dict:
        return {
            "insight_type": "patterns",
            "insight_title": title,
            "insight_description": f"{title} details",
            "confidence_score": Decimal(str(confidence)),
            "supporting_data": {"months": 3},
            "action_recommendations": ["Set a budget"],
        }

    def test_confidence_drives_threshold_and_cap(self):
        insights = FakeInsights([
            self._insight(0.9, "Coffee up"),
            self._insight(0.5, "Too weak"),
            self._insight(0.8, "Groceries steady"),
            self._insight(0.7, "Fuel down"),
            self._insight(0.6, "Dining flat"),
        ])
        items = _run(_build(AnalyticsSource, insights).retrieve(VECTOR, "t1"))

        assert [i.source_id for i in items] == ["insight_0", "insight_2", "insight_3"]
        assert items[0].similarity_score == 0.9
        assert items[0].relevance_score == 0.9 * 0.1
        assert items[0].summary == "Coffee up: Coffee up details"

    def test_uses_configured_period(self):
        insights = FakeInsights([])
        _run(_build(AnalyticsSource, insights).retrieve(VECTOR, "t1"))
        assert insights.calls == [{
            "tenant_id": "t1",
            "period_days": 90,
            "insight_types": ["patterns", "trends"],
        }]


# ---------------------------------------------------------------------------
# Test: Helpers
# ---------------------------------------------------------------------------


class TestJsonable:
    def test_nested(self):
        value = {"a": [Decimal("1.50"), date(2024, 1, 2)], "b": (1, 2)}
        assert jsonable(value) == {"a": [1.5, "2024-01-02"], "b": [1, 2]}


class TestGroupPotentialDuplicates:
    def _item(self, source_id, merchant, amount, day, source_type=SourceType.RECEIPTS):
        return EvidenceItem(
            source_type=source_type,
            source_id=source_id,
            similarity_score=0.9,
            relevance_score=0.36,
            summary="",
            content={
                "merchant_name": merchant,
                "total_amount": amount,
                "purchase_date": day,
            },
        )

    def test_groups_close_amounts_and_dates(self):
        items = [
            self._item("r1", "Target", 45.00, "2024-03-01"),
            self._item("r2", "target", 45.80, "2024-03-02"),
            self._item("r3", "Target", 47.50, "2024-03-01"),
            self._item("r4", "Costco", 45.00, "2024-03-01"),
        ]
        assert group_potential_duplicates(items) == [["r1", "r2"]]

    def test_dates_too_far_apart(self):
        items = [
            self._item("r1", "Target", 45.00, "2024-03-01"),
            self._item("r2", "Target", 45.00, "2024-03-04"),
        ]
        assert group_potential_duplicates(items) == []

    def test_ignores_other_sources(self):
        items = [
            self._item("r1", "Target", 45.00, "2024-03-01"),
            self._item("w1", "Target", 45.00, "2024-03-01", SourceType.WARRANTIES),
        ]
        assert group_potential_duplicates(items) == []
