# =============================================================================
# Context Models — Pydantic V2 Schemas
# =============================================================================
#
# The data model shared by every component of the engine:
#
#   Query ──▶ IntentClassification + EntitySet
#         ──▶ EvidenceItem (per retrieval source)
#         ──▶ ContextBundle (ranked, diversified, summarised)
#
# All models are frozen. A bundle is never mutated after creation; ranking
# produces new EvidenceItem copies via model_copy(update=...).
#
# Every model round-trips through JSON (model_dump(mode="json") /
# model_validate) so the same objects can live in Redis or in the
# in-process cache without a separate wire format.
# =============================================================================

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    """Evidence categories. Declaration order is retrieval order."""

    RECEIPTS = "receipts"
    WARRANTIES = "warranties"
    CONVERSATIONS = "conversations"
    ANALYTICS = "analytics"


class Intent(str, Enum):
    """Query intents. Declaration order breaks classification ties."""

    RECEIPT_SEARCH = "receipt_search"
    WARRANTY_QUERY = "warranty_query"
    BUDGET_ANALYSIS = "budget_analysis"
    CATEGORY_CLASSIFICATION = "category_classification"
    DUPLICATE_DETECTION = "duplicate_detection"
    TREND_ANALYSIS = "trend_analysis"
    GENERAL_SEARCH = "general_search"


ContextStrength = Literal["high", "medium", "low"]


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class QueryOptions(BaseModel):
    """
    Caller-supplied knobs for a single assemble() call.

    Example:
        {
            "context_types": ["receipts"],
            "max_items": 5,
            "include_expired": false,
            "threshold": 0.6
        }
    """

    model_config = ConfigDict(frozen=True)

    context_types: list[SourceType] | None = Field(
        default=None,
        description="Retrieval sources to query. Defaults to receipts, "
        "warranties and conversations.",
    )
    max_items: int | None = Field(
        default=None,
        ge=1,
        description="Global cap on evidence items (clamped to the hard ceiling).",
    )
    include_expired: bool = Field(
        default=False,
        description="Include expired warranties.",
    )
    include_related: bool | None = Field(
        default=None,
        description="Let conversation retrieval look beyond the current "
        "conversation. Defaults to the configured value.",
    )
    threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Overrides every source's minimum similarity.",
    )

    def cache_fingerprint(self) -> dict[str, Any]:
        """The option subset that changes what assemble() returns."""
        return {
            "context_types": (
                sorted(t.value for t in self.context_types)
                if self.context_types is not None
                else None
            ),
            "max_items": self.max_items,
            "include_expired": self.include_expired,
            "include_related": self.include_related,
            "threshold": self.threshold,
        }


class Query(BaseModel):
    """Immutable request input: created per assemble() call."""

    model_config = ConfigDict(frozen=True)

    text: str
    tenant_id: str
    conversation_id: str | None = None
    options: QueryOptions = Field(default_factory=QueryOptions)


# ---------------------------------------------------------------------------
# Query Understanding
# ---------------------------------------------------------------------------


class IntentClassification(BaseModel):
    """Result of phrase-count intent classification."""

    model_config = ConfigDict(frozen=True)

    primary: Intent = Intent.GENERAL_SEARCH
    secondary: list[Intent] = Field(default_factory=list)
    confidence: float = 0.0
    scores: dict[str, int] = Field(default_factory=dict)


class AmountRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: date
    end: date


class EntitySet(BaseModel):
    """
    Best-effort structured fields pulled out of the query text.

    A single amount lands in target_amount; two or more amounts are
    summarised as amount_range. time_range is an approximate month count
    (weeks ÷ 4, days ÷ 30), with the matched phrase kept in time_range_text.
    """

    model_config = ConfigDict(frozen=True)

    merchant: str | None = None
    brand: str | None = None
    target_amount: float | None = None
    amount_range: AmountRange | None = None
    date_text: str | None = None
    date_range: DateRange | None = None
    category: str | None = None
    time_range_text: str | None = None
    time_range: float | None = None

    def is_empty(self) -> bool:
        return not any(
            value is not None for value in self.model_dump().values()
        )


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceItem(BaseModel):
    """
    One retrieved piece of context.

    relevance_score = similarity_score × source weight, so it never exceeds
    similarity_score. rank and normalized_relevance are set by the assembler.
    """

    model_config = ConfigDict(frozen=True)

    source_type: SourceType
    source_id: str
    similarity_score: float = Field(ge=0.0, le=1.0)
    relevance_score: float = Field(ge=0.0, le=1.0)
    summary: str
    content: dict[str, Any] = Field(default_factory=dict)
    snippet: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    rank: int | None = None
    normalized_relevance: float | None = None


class TypeCount(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SourceType
    count: int


class ContextSummary(BaseModel):
    """Aggregate view of a bundle's evidence."""

    model_config = ConfigDict(frozen=True)

    total_items: int = 0
    items_by_type: dict[str, int] = Field(default_factory=dict)
    avg_relevance: float = 0.0
    strength: ContextStrength = "low"
    top_context_types: list[TypeCount] = Field(default_factory=list)


class BundleMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_items: int
    context_types: list[SourceType]
    tenant_id: str
    conversation_id: str | None = None
    generated_at: datetime


class ContextBundle(BaseModel):
    """The assembler's output, cached under the medium TTL class."""

    model_config = ConfigDict(frozen=True)

    query: Query
    intent: IntentClassification
    entities: EntitySet
    items: list[EvidenceItem] = Field(default_factory=list)
    summary: ContextSummary = Field(default_factory=ContextSummary)
    duplicate_groups: list[list[str]] = Field(default_factory=list)
    metadata: BundleMetadata


class ContextUnavailableResponse(BaseModel):
    """
    Explicit failure returned to the answer generator instead of a bundle.

    Generation must not proceed from an empty context when this is returned.
    """

    model_config = ConfigDict(frozen=True)

    status: Literal["context_unavailable"] = "context_unavailable"
    query: str
    tenant_id: str
    reason: str
