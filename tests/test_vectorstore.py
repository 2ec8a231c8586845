# =============================================================================
# Unit Tests — pgvector Store
# =============================================================================
#
# No database: the session factory is a mock whose session records the
# statements and parameters it is asked to execute.
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from context_engine.config import Settings
from context_engine.models.context import SourceType
from context_engine.services.vectorstore import PgSpendingInsights, PgVectorStore


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _row(**values):
    return SimpleNamespace(_mapping=values, **values)


def _factory(*results):
    session = AsyncMock()
    session.execute.side_effect = [list(r) for r in results]
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    factory.return_value.__aexit__.return_value = False
    return factory, session


class TestPgVectorStore:
    def test_receipt_search_call(self):
        factory, session = _factory([_row(receipt_id="r1", similarity_score=0.9)])
        store = PgVectorStore(factory, Settings())

        rows = _run(store.search(
            SourceType.RECEIPTS, [0.1] * 3, "t1",
            threshold=0.65, limit=8,
            filters={"merchant_filter": "Starbucks", "min_amount": None},
        ))

        assert rows == [{"receipt_id": "r1", "similarity_score": 0.9}]
        stmt, params = session.execute.await_args.args
        assert "search_receipts_advanced(" in str(stmt)
        assert params["match_threshold"] == 0.65
        assert params["match_count"] == 8
        assert params["merchant_filter"] == "Starbucks"
        assert "min_amount" not in params
        session.rollback.assert_awaited()

    def test_limit_clamped(self):
        factory, session = _factory([])
        store = PgVectorStore(factory, Settings(max_items_ceiling=5))

        _run(store.search(SourceType.WARRANTIES, [0.1], "t1", threshold=0.7, limit=20))

        _, params = session.execute.await_args.args
        assert params["match_count"] == 5

    def test_category_name_resolved_to_ids(self):
        factory, session = _factory([_row(id="cat-1")], [])
        store = PgVectorStore(factory, Settings())

        _run(store.search(
            SourceType.RECEIPTS, [0.1], "t1", threshold=0.65, limit=8,
            filters={"category_name": "food"},
        ))

        lookup_params = session.execute.await_args_list[0].args[1]
        assert lookup_params == {"tenant_id": "t1", "name": "food"}
        _, params = session.execute.await_args.args
        assert params["category_ids"] == ["cat-1"]
        assert "category_name" not in params

    def test_unknown_filter_rejected(self):
        factory, session = _factory([])
        store = PgVectorStore(factory, Settings())

        with pytest.raises(ValueError, match="Unsupported filters"):
            _run(store.search(
                SourceType.CONVERSATIONS, [0.1], "t1", threshold=0.6, limit=7,
                filters={"merchant_filter": "x"},
            ))
        session.execute.assert_not_awaited()

    def test_analytics_has_no_search_function(self):
        store = PgVectorStore(MagicMock(), Settings())
        with pytest.raises(ValueError, match="No similarity search function"):
            _run(store.search(SourceType.ANALYTICS, [0.1], "t1", threshold=0.5, limit=3))


class TestPgSpendingInsights:
    def test_named_arguments(self):
        factory, session = _factory([_row(insight_type="trends", confidence_score=0.8)])
        provider = PgSpendingInsights(factory, Settings())

        rows = _run(provider.spending_insights(
            "t1", period_days=90, insight_types=["patterns", "trends"],
        ))

        assert rows == [{"insight_type": "trends", "confidence_score": 0.8}]
        _, params = session.execute.await_args.args
        assert params == {
            "user_id_param": "t1",
            "analysis_period_days": 90,
            "insight_types": ["patterns", "trends"],
        }
