# =============================================================================
# Content Text Builders — What Gets Embedded per Record Type
# =============================================================================
#
# Receipts, warranties and conversation messages are embedded as labelled
# plain text, one field per line. The same builders are used by the bulk
# re-embedding task so stored vectors and cache keys stay consistent.
#
# Missing or empty fields are skipped; a record with no usable fields
# produces an empty string (callers skip those).
# =============================================================================

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any


def build_receipt_text(receipt: Mapping[str, Any]) -> str:
    """Merchant, amount, date, category, OCR text, line items, tags, notes."""
    parts: list[str] = []

    if receipt.get("merchant_name"):
        parts.append(f"Merchant: {receipt['merchant_name']}")
    if receipt.get("total_amount"):
        parts.append(f"Amount: ${receipt['total_amount']}")
    if receipt.get("purchase_date"):
        parts.append(f"Date: {receipt['purchase_date']}")
    if receipt.get("category_name"):
        parts.append(f"Category: {receipt['category_name']}")
    if receipt.get("ocr_text"):
        parts.append(f"Receipt text: {receipt['ocr_text']}")

    line_items = receipt.get("line_items") or []
    if line_items:
        items_text = ", ".join(
            f"{item.get('description', '')} ${item.get('amount', '')}"
            for item in line_items
        )
        parts.append(f"Items: {items_text}")

    tags = receipt.get("tags") or []
    if tags:
        parts.append(f"Tags: {', '.join(tags)}")
    if receipt.get("notes"):
        parts.append(f"Notes: {receipt['notes']}")
    if receipt.get("location_address"):
        parts.append(f"Location: {receipt['location_address']}")

    return "\n".join(parts)


def build_warranty_text(warranty: Mapping[str, Any]) -> str:
    labels = [
        ("product_name", "Product"),
        ("product_brand", "Brand"),
        ("product_model", "Model"),
        ("product_category", "Category"),
        ("warranty_terms", "Warranty terms"),
        ("purchase_price", "Purchase price"),
        ("purchase_location", "Purchase location"),
        ("warranty_end_date", "Warranty expires"),
    ]
    parts = []
    for field_name, label in labels:
        value = warranty.get(field_name)
        if not value:
            continue
        if field_name == "purchase_price":
            parts.append(f"{label}: ${value}")
        else:
            parts.append(f"{label}: {value}")
    return "\n".join(parts)


def build_conversation_text(message: Mapping[str, Any]) -> str:
    """
    Message content plus up to three preceding messages as context.

    Expects optional "previous_messages" (list of dicts with message_type
    and content) and "referenced_receipts"/"referenced_warranties" lists.
    """
    parts: list[str] = []
    if message.get("content"):
        parts.append(str(message["content"]))

    previous = message.get("previous_messages") or []
    if previous:
        context_text = "\n".join(
            f"{msg.get('message_type', 'message')}: {msg.get('content', '')}"
            for msg in previous[-3:]
        )
        parts.append(f"Context: {context_text}")

    receipts = message.get("referenced_receipts") or []
    if receipts:
        parts.append(f"References receipts: {len(receipts)} items")
    warranties = message.get("referenced_warranties") or []
    if warranties:
        parts.append(f"References warranties: {len(warranties)} items")

    return "\n".join(parts)


CONTENT_BUILDERS: dict[str, Callable[[Mapping[str, Any]], str]] = {
    "receipt": build_receipt_text,
    "warranty": build_warranty_text,
    "conversation": build_conversation_text,
}


def build_content_text(record_type: str, record: Mapping[str, Any]) -> str:
    """
    Dispatch to the builder for record_type.

    Raises:
        ValueError: unknown record type.
    """
    try:
        builder = CONTENT_BUILDERS[record_type]
    except KeyError:
        raise ValueError(f"Unknown record type: {record_type}") from None
    return builder(record)
