# =============================================================================
# Conversations Source
# =============================================================================
#
# Pulls earlier messages similar to the query. When a conversation id is
# given the store favours that conversation; related conversations are
# included unless options.include_related is False.
# Weight 0.2 / cap 7 / threshold 0.60 by default.
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
from context_engine.sources.base import RetrievalSource, jsonable

SUMMARY_PREVIEW_CHARS = 100


class ConversationsSource(RetrievalSource):
    source_type = SourceType.CONVERSATIONS

    def build_filters(
        self,
        entities: EntitySet,
        options: QueryOptions,
        conversation_id: str | None,
    ) -> dict[str, Any]:
        include_related = (
            options.include_related
            if options.include_related is not None
            else self._settings.include_related_conversations
        )
        return {
            "conversation_id_param": conversation_id,
            "include_related_conversations": include_related,
        }

    def to_evidence(self, row: Mapping[str, Any], similarity: float) -> EvidenceItem:
        text = row.get("content_text") or ""
        message_type = row.get("message_type") or "message"
        preview = text[:SUMMARY_PREVIEW_CHARS]
        if len(text) > SUMMARY_PREVIEW_CHARS:
            preview += "..."
        conversation_id = jsonable(row.get("conversation_id"))

        return EvidenceItem(
            source_type=self.source_type,
            source_id=str(row["message_id"]),
            similarity_score=similarity,
            relevance_score=self.relevance(similarity),
            summary=f"Previous {message_type}: {preview}",
            content={
                "conversation_id": conversation_id,
                "message_type": message_type,
                "content_text": text,
                "sequence_number": row.get("sequence_number"),
                "created_at": jsonable(row.get("created_at")),
            },
            snippet=text,
            metadata={
                "referenced_receipts": jsonable(row.get("referenced_receipts") or []),
                "referenced_warranties": jsonable(row.get("referenced_warranties") or []),
            },
        )
