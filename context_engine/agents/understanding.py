# =============================================================================
# Query Understanding — Intent Classification & Entity Extraction
# =============================================================================
#
# Pure, synchronous, no external calls:
#
#   classify(text) → IntentClassification
#   extract(text)  → EntitySet
#
# Neither function ever raises. On no match (or on any unexpected error)
# they return the lowest-confidence default: general_search / empty set.
#
# DESIGN DECISION: Keyword and regex heuristics, not an LLM call.
# Classification runs on every query before anything else and must be
# free, instant and deterministic. The heuristics are deliberately coarse
# (weeks ÷ 4 for months, days ÷ 30); downstream filters are tolerant of it.
#
# CLASSIFICATION:
# Each intent owns a phrase list. Its score is the number of phrases that
# occur in the lower-cased query. The highest score wins, with ties going
# to the intent declared first in Intent. confidence = winning score ÷
# length of the winner's phrase list. Every other intent with a nonzero
# score becomes a secondary intent, highest score first.
# =============================================================================

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta

from context_engine.models.context import (
    AmountRange,
    DateRange,
    EntitySet,
    Intent,
    IntentClassification,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Intent Phrase Lists (declaration order = Intent order = tie-break order)
# ---------------------------------------------------------------------------

INTENT_PHRASES: dict[Intent, tuple[str, ...]] = {
    Intent.RECEIPT_SEARCH: (
        "find receipt", "search receipt", "receipt from", "purchase at",
        "spent at", "bought at", "transaction", "payment",
        # Bare purchase vocabulary: "coffee at Starbucks", "paid for lunch"
        "receipt", "purchase", "bought", "paid", " at ",
    ),
    Intent.WARRANTY_QUERY: (
        "warranty", "guarantee", "return policy", "coverage", "expires",
        "still covered", "warranty info",
    ),
    Intent.BUDGET_ANALYSIS: (
        "spending", "budget", "total spent", "monthly expenses",
        "category spending", "how much", "analyze spending",
    ),
    Intent.CATEGORY_CLASSIFICATION: (
        "what category", "classify", "categorize", "type of expense",
    ),
    Intent.DUPLICATE_DETECTION: (
        "duplicate", "same receipt", "already added", "similar purchase",
    ),
    Intent.TREND_ANALYSIS: (
        "trends", "patterns", "over time", "monthly", "weekly",
        "comparison", "increase", "decrease",
    ),
}


# ---------------------------------------------------------------------------
# Entity Patterns
# ---------------------------------------------------------------------------

_STOP_WORDS = (
    "on|last|past|in|for|this|since|before|after|during|yesterday|today"
)

# "at Starbucks last month" → "Starbucks"; "from Best Buy" → "Best Buy".
# Lazy capture stops at the first time/filter word or the end of the text.
MERCHANT_PATTERN = re.compile(
    r"\b(?:at|from)\s+"
    r"(?!(?:last|past|this|next|today|yesterday)\b)"
    r"([A-Za-z][A-Za-z'&-]*(?:\s+[A-Za-z][A-Za-z'&-]*)*?)"
    rf"(?=\s+(?:{_STOP_WORDS})\b|\s*[?.!,]?\s*$)",
    re.IGNORECASE,
)
AMOUNT_PATTERN = re.compile(r"\$?(\d+(?:\.\d{2})?)")
DATE_PATTERN = re.compile(
    r"\b(?:on|from|since|before|after)\s+([\d/\-]+|\w+\s+\d+(?:,\s+\d{4})?)",
    re.IGNORECASE,
)
RELATIVE_DAY_PATTERN = re.compile(r"\b(today|yesterday)\b", re.IGNORECASE)
CATEGORY_PATTERN = re.compile(
    r"\b(?:in|for)\s+(food|gas|groceries|entertainment|healthcare|shopping"
    r"|utilities|transportation)",
    re.IGNORECASE,
)
TIME_RANGE_PATTERN = re.compile(
    r"\b(?:last|past|in the)\s+(week|month|year|\d+\s+(?:days|weeks|months))",
    re.IGNORECASE,
)
WARRANTY_TERMS_PATTERN = re.compile(r"warranty|guarantee|coverage", re.IGNORECASE)
# Case-sensitive on purpose: "my Samsung TV" → "Samsung", "my laptop" → none
BRAND_PATTERN = re.compile(r"\bmy\s+([A-Z][\w&-]*)")

_DATE_FORMATS = ("%B %d, %Y", "%b %d, %Y", "%m/%d/%Y", "%Y-%m-%d")
_YEARLESS_DATE_FORMATS = ("%B %d", "%b %d")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def classify(text: str) -> IntentClassification:
    """Score every intent against the query and pick the best."""
    try:
        normalized = text.lower()
        scores = {
            intent: sum(1 for phrase in phrases if phrase in normalized)
            for intent, phrases in INTENT_PHRASES.items()
        }

        # max() keeps the first of equal scores, i.e. declaration order
        primary = max(scores, key=lambda intent: scores[intent])
        best = scores[primary]
        raw_scores = {intent.value: score for intent, score in scores.items()}

        if best == 0:
            return IntentClassification(scores=raw_scores)

        secondary = sorted(
            (i for i in scores if i is not primary and scores[i] > 0),
            key=lambda i: scores[i],
            reverse=True,
        )
        return IntentClassification(
            primary=primary,
            secondary=secondary,
            confidence=min(1.0, best / max(1, len(INTENT_PHRASES[primary]))),
            scores=raw_scores,
        )
    except Exception:
        logger.exception("Intent classification failed; using general_search")
        return IntentClassification()


def extract(text: str, today: date | None = None) -> EntitySet:
    """
    Pull merchant, amounts, dates, category, time window and brand out of
    the query. Each field is extracted independently; a field that does
    not match stays None.
    """
    try:
        return _extract(text, today or date.today())
    except Exception:
        logger.exception("Entity extraction failed; returning empty entities")
        return EntitySet()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _extract(text: str, today: date) -> EntitySet:
    fields: dict = {}

    merchant_match = MERCHANT_PATTERN.search(text)
    if merchant_match:
        fields["merchant"] = merchant_match.group(1).strip()

    # Numbers inside a date or time phrase are not amounts
    excluded_spans: list[tuple[int, int]] = []

    date_match = DATE_PATTERN.search(text)
    relative_match = RELATIVE_DAY_PATTERN.search(text)
    if date_match:
        fields["date_text"] = date_match.group(1)
        excluded_spans.append(date_match.span(1))
    elif relative_match:
        fields["date_text"] = relative_match.group(1)
    if "date_text" in fields:
        date_range = parse_date(fields["date_text"], today)
        if date_range is not None:
            fields["date_range"] = date_range

    time_match = TIME_RANGE_PATTERN.search(text)
    if time_match:
        fields["time_range_text"] = time_match.group(1)
        fields["time_range"] = parse_time_range(time_match.group(1))
        excluded_spans.append(time_match.span(1))

    amounts = [
        float(m.group(1))
        for m in AMOUNT_PATTERN.finditer(text)
        if not _overlaps(m.span(), excluded_spans)
    ]
    if len(amounts) == 1:
        fields["target_amount"] = amounts[0]
    elif amounts:
        fields["amount_range"] = AmountRange(min=min(amounts), max=max(amounts))

    category_match = CATEGORY_PATTERN.search(text)
    if category_match:
        fields["category"] = category_match.group(1).lower()

    if WARRANTY_TERMS_PATTERN.search(text):
        brand_match = BRAND_PATTERN.search(text)
        brand = brand_match.group(1) if brand_match else fields.get("merchant")
        if brand:
            fields["brand"] = brand

    return EntitySet(**fields)


def _overlaps(span: tuple[int, int], others: list[tuple[int, int]]) -> bool:
    start, end = span
    return any(start < o_end and o_start < end for o_start, o_end in others)


def parse_time_range(phrase: str) -> float:
    """
    Approximate a relative window in months.

    "week" → 0.25 per week, "N days" → N ÷ 30, "N months" → N,
    "year" → 12, anything else → 1.
    """
    normalized = phrase.lower()
    number = re.search(r"\d+", normalized)
    count = int(number.group()) if number else 1

    if "week" in normalized:
        return 0.25 * count
    if "month" in normalized:
        return float(count)
    if "year" in normalized:
        return 12.0
    if "day" in normalized:
        return count / 30
    return 1.0


def parse_date(date_text: str, today: date) -> DateRange | None:
    """Turn a date phrase into a one-day range, or None if unparseable."""
    normalized = date_text.strip().lower()
    if normalized == "today":
        return DateRange(start=today, end=today)
    if normalized == "yesterday":
        yesterday = today - timedelta(days=1)
        return DateRange(start=yesterday, end=yesterday)

    cleaned = date_text.strip()
    for fmt in _DATE_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
        return DateRange(start=parsed, end=parsed)

    for fmt in _YEARLESS_DATE_FORMATS:
        try:
            parsed = datetime.strptime(f"{cleaned} {today.year}", f"{fmt} %Y").date()
        except ValueError:
            continue
        return DateRange(start=parsed, end=parsed)

    return None
