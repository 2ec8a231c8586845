# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Query input, query-understanding output, evidence items and the context
# bundle. These are the only types that cross component boundaries and the
# only types written to the cache.
# =============================================================================

from context_engine.models.context import (
    AmountRange,
    BundleMetadata,
    ContextBundle,
    ContextSummary,
    ContextUnavailableResponse,
    DateRange,
    EntitySet,
    EvidenceItem,
    Intent,
    IntentClassification,
    Query,
    QueryOptions,
    SourceType,
    TypeCount,
)

__all__ = [
    "AmountRange",
    "BundleMetadata",
    "ContextBundle",
    "ContextSummary",
    "ContextUnavailableResponse",
    "DateRange",
    "EntitySet",
    "EvidenceItem",
    "Intent",
    "IntentClassification",
    "Query",
    "QueryOptions",
    "SourceType",
    "TypeCount",
]
