# =============================================================================
# Prompt Formatting — ContextBundle → Markdown for the Answer Generator
# =============================================================================
#
# Groups the bundle's evidence by source type, in rank order, under one
# heading per type, then appends a short summary block:
#
#   ## Available Context
#   ### Recent Receipts
#   1. Receipt from Starbucks on 2024-03-02 for $5.45
#      Tags: coffee, work
#   ...
#   ## Context Summary
#   Total context items: 4
#   Context strength: low
#   Average relevance: 0.31
# =============================================================================

from __future__ import annotations

from context_engine.models.context import ContextBundle, EvidenceItem, SourceType

SECTION_TITLES: dict[SourceType, str] = {
    SourceType.RECEIPTS: "Recent Receipts",
    SourceType.WARRANTIES: "Warranty Information",
    SourceType.CONVERSATIONS: "Previous Conversations",
    SourceType.ANALYTICS: "Spending Insights",
}

CONVERSATION_PREVIEW_CHARS = 150


def _format_item(index: int, item: EvidenceItem) -> list[str]:
    content = item.content

    if item.source_type is SourceType.CONVERSATIONS:
        text = content.get("content_text") or ""
        message_type = content.get("message_type") or "message"
        return [f"{index}. {message_type}: {text[:CONVERSATION_PREVIEW_CHARS]}..."]

    lines = [f"{index}. {item.summary}"]
    if item.source_type is SourceType.RECEIPTS and content.get("tags"):
        lines.append(f"   Tags: {', '.join(str(t) for t in content['tags'])}")
    if (
        item.source_type is SourceType.WARRANTIES
        and content.get("days_until_expiry") is not None
    ):
        lines.append(f"   Expires in {content['days_until_expiry']} days")
    return lines


def format_context_for_prompt(bundle: ContextBundle) -> str:
    """Render a bundle as the Markdown context block of a generation prompt."""
    lines = ["## Available Context", ""]

    for source_type, title in SECTION_TITLES.items():
        section = [item for item in bundle.items if item.source_type is source_type]
        if not section:
            continue
        lines.append(f"### {title}")
        for index, item in enumerate(section, start=1):
            lines.extend(_format_item(index, item))
        lines.append("")

    summary = bundle.summary
    lines.extend([
        "## Context Summary",
        f"Total context items: {summary.total_items}",
        f"Context strength: {summary.strength}",
        f"Average relevance: {summary.avg_relevance:.2f}",
    ])
    return "\n".join(lines) + "\n"
