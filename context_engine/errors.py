# =============================================================================
# Error Taxonomy
# =============================================================================
#
#   ContextEngineError
#   ├── EmbeddingUnavailable  — provider failed or timed out (fatal)
#   ├── ContextUnavailable    — assemble() aborted, carries the cause (fatal)
#   └── RetrievalError        — malformed store response (absorbed by sources)
#
# Fatal errors reach the caller with the original exception chained as
# __cause__. Retrieval errors never leave a retrieval source: the source
# logs, records diagnostics and contributes no evidence.
# Cache backend errors are not part of this hierarchy; the cache layer
# degrades to its in-process backend instead of raising.
# =============================================================================

from __future__ import annotations


class ContextEngineError(Exception):
    """Base class for all context engine errors."""


class EmbeddingUnavailable(ContextEngineError):
    """The embedding provider could not produce a vector for the text."""

    def __init__(self, cause: BaseException | None = None) -> None:
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause else "unknown"
        super().__init__(f"Embedding provider unavailable ({detail})")


class ContextUnavailable(ContextEngineError):
    """
    No context can be assembled for the query.

    Raised only when the query vector cannot be obtained. Callers must turn
    this into an explicit "context unavailable" response rather than an
    empty bundle.
    """

    def __init__(self, query: str, cause: BaseException | None = None) -> None:
        self.query = query
        self.cause = cause
        super().__init__(f"Context unavailable for query '{query[:80]}'")


class RetrievalError(ContextEngineError):
    """A retrieval source received a response it could not interpret."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"[{source}] {message}")
