# =============================================================================
# Services Package — Cache, Embeddings, Persistence Adapters, Diagnostics
# =============================================================================
#   - cache.py:       CacheLayer over Redis with in-process fallback
#   - embedder.py:    EmbeddingGateway + OpenAI-compatible provider
#   - content.py:     content text builders for bulk embedding
#   - vectorstore.py: pgvector similarity search + spending insights
#   - diagnostics.py: process-local counters for absorbed failures
# =============================================================================
