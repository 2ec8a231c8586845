# =============================================================================
# Unit Tests — Embedding Gateway
# =============================================================================
#
# Uses a fake provider that records every call, so the tests can assert
# how many provider requests the gateway made. The OpenAI provider is
# tested against a mocked AsyncOpenAI client (no API key needed).
# =============================================================================

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from context_engine.config import Settings
from context_engine.errors import EmbeddingUnavailable
from context_engine.services.cache import CacheLayer, InMemoryCacheBackend
from context_engine.services.diagnostics import Diagnostics
from context_engine.services.embedder import (
    EmbeddingGateway,
    OpenAIEmbeddingProvider,
    enhance_query,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeProvider:
    """Deterministic vectors; records calls and peak concurrency."""

    def __init__(self, fail_on: str | None = None, delay: float = 0.0):
        self.calls: list[list[str]] = []
        self.fail_on = fail_on
        self.delay = delay
        self.in_flight = 0
        self.peak_in_flight = 0

    async def embed(self, texts):
        self.calls.append(list(texts))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_on is not None and self.fail_on in texts:
                raise RuntimeError("provider exploded")
            return [[float(len(t)), 1.0] for t in texts]
        finally:
            self.in_flight -= 1


def _gateway(provider, diagnostics=None, **overrides):
    settings = Settings(**overrides)
    cache = CacheLayer(InMemoryCacheBackend(), settings=settings)
    return EmbeddingGateway(provider, cache, settings=settings, diagnostics=diagnostics)


# ---------------------------------------------------------------------------
# Test: Query Enhancement
# ---------------------------------------------------------------------------


class TestEnhanceQuery:
    def test_lowercases(self):
        assert enhance_query("Coffee AT Starbucks") == "coffee at starbucks"

    def test_appends_expansion(self):
        assert enhance_query("gas last week") == (
            "gas last week gas fuel gasoline petrol station"
        )

    def test_multiple_keywords(self):
        enhanced = enhance_query("pharmacy and grocery")
        assert "medicine" in enhanced
        assert "market" in enhanced


# ---------------------------------------------------------------------------
# Test: Single Embeddings
# ---------------------------------------------------------------------------


class TestEmbed:
    def test_second_call_served_from_cache(self):
        provider = FakeProvider()
        gateway = _gateway(provider)

        async def scenario():
            first = await gateway.embed("hello")
            second = await gateway.embed("hello")
            return first, second

        first, second = _run(scenario())
        assert first == second == [5.0, 1.0]
        assert provider.calls == [["hello"]]

    def test_distinct_texts_each_call_provider(self):
        provider = FakeProvider()
        gateway = _gateway(provider)

        async def scenario():
            await gateway.embed("a")
            await gateway.embed("b")

        _run(scenario())
        assert provider.calls == [["a"], ["b"]]

    def test_embed_query_enhances(self):
        provider = FakeProvider()
        gateway = _gateway(provider)
        _run(gateway.embed_query("Restaurant receipts"))
        assert provider.calls == [[
            "restaurant receipts restaurant dining food meal",
        ]]

    def test_plain_embed_does_not_enhance(self):
        provider = FakeProvider()
        gateway = _gateway(provider)
        _run(gateway.embed("Restaurant"))
        assert provider.calls == [["Restaurant"]]

    def test_long_text_truncated(self):
        provider = FakeProvider()
        gateway = _gateway(provider, embedding_max_chars=10)
        _run(gateway.embed("x" * 50))
        assert provider.calls == [["x" * 10]]

    def test_provider_error_is_embedding_unavailable(self):
        diagnostics = Diagnostics()
        gateway = _gateway(FakeProvider(fail_on="boom"), diagnostics=diagnostics)

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            _run(gateway.embed("boom"))

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert diagnostics.embedding_failures == 1

    def test_timeout_is_embedding_unavailable(self):
        gateway = _gateway(FakeProvider(delay=1.0), embedding_timeout_seconds=0.01)

        with pytest.raises(EmbeddingUnavailable) as exc_info:
            _run(gateway.embed("slow"))

        assert isinstance(exc_info.value.__cause__, TimeoutError)

    def test_failures_are_not_cached(self):
        provider = FakeProvider(fail_on="flaky")
        gateway = _gateway(provider)

        async def scenario():
            with pytest.raises(EmbeddingUnavailable):
                await gateway.embed("flaky")
            provider.fail_on = None
            return await gateway.embed("flaky")

        assert _run(scenario()) == [5.0, 1.0]
        assert len(provider.calls) == 2

    def test_empty_vector_rejected(self):
        provider = AsyncMock()
        provider.embed.return_value = [[]]
        gateway = _gateway(provider)

        with pytest.raises(EmbeddingUnavailable):
            _run(gateway.embed("x"))


# ---------------------------------------------------------------------------
# Test: Bulk Embeddings
# ---------------------------------------------------------------------------


class TestEmbedMany:
    def test_batches_by_configured_size(self):
        provider = FakeProvider()
        gateway = _gateway(provider, embedding_batch_size=2)

        results = _run(gateway.embed_many(["a", "bb", "ccc", "dddd", "eeeee"]))

        assert [r.embedding[0] for r in results] == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert all(r.success for r in results)
        assert sorted(len(call) for call in provider.calls) == [1, 2, 2]

    def test_bounded_in_flight(self):
        provider = FakeProvider(delay=0.01)
        gateway = _gateway(provider, embedding_batch_size=1, embedding_max_in_flight=2)

        _run(gateway.embed_many([f"text {i}" for i in range(8)]))

        assert len(provider.calls) == 8
        assert provider.peak_in_flight <= 2

    def test_cached_texts_skipped(self):
        provider = FakeProvider()
        gateway = _gateway(provider)

        async def scenario():
            await gateway.embed("warm")
            return await gateway.embed_many(["warm", "cold"])

        results = _run(scenario())
        assert [r.cached for r in results] == [True, False]
        assert provider.calls == [["warm"], ["cold"]]

    def test_failed_batch_reported_not_raised(self):
        provider = FakeProvider(fail_on="bad")
        gateway = _gateway(provider, embedding_batch_size=2)

        results = _run(gateway.embed_many(["ok", "fine", "bad", "worse"]))

        assert [r.success for r in results] == [True, True, False, False]
        assert results[2].error is not None

    def test_empty_input(self):
        assert _run(_gateway(FakeProvider()).embed_many([])) == []


# ---------------------------------------------------------------------------
# Test: OpenAI Provider
# ---------------------------------------------------------------------------


class TestOpenAIEmbeddingProvider:
    def test_missing_api_key(self):
        provider = OpenAIEmbeddingProvider(
            Settings(openai_api_key="", embedding_api_key=None),
        )
        with pytest.raises(ValueError, match="No API key"):
            _run(provider.embed(["x"]))

    def test_results_reordered_by_index(self):
        provider = OpenAIEmbeddingProvider(Settings(openai_api_key="sk-test"))
        client = SimpleNamespace(embeddings=SimpleNamespace(create=AsyncMock()))
        client.embeddings.create.return_value = SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[2.0]),
                SimpleNamespace(index=0, embedding=[1.0]),
            ],
            usage=None,
        )
        provider._client = client

        vectors = _run(provider.embed(["first", "second"]))

        assert vectors == [[1.0], [2.0]]
        kwargs = client.embeddings.create.call_args.kwargs
        assert kwargs["model"] == "text-embedding-3-small"
        assert kwargs["dimensions"] == 1536
        assert kwargs["input"] == ["first", "second"]

    def test_empty_input_skips_client(self):
        provider = OpenAIEmbeddingProvider(Settings(openai_api_key=""))
        assert _run(provider.embed([])) == []
