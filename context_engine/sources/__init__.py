# =============================================================================
# Retrieval Sources Package
# =============================================================================
#   - base.py:          RetrievalSource contract (cache, timeout, threshold,
#                       weight, cap, failure absorption)
#   - receipts.py:      receipts + duplicate grouping
#   - warranties.py:    warranties (brand, expired flag)
#   - conversations.py: earlier messages (current + related conversations)
#   - analytics.py:     spending insights
# =============================================================================

from context_engine.sources.analytics import AnalyticsSource
from context_engine.sources.base import RetrievalResult, RetrievalSource
from context_engine.sources.conversations import ConversationsSource
from context_engine.sources.receipts import ReceiptsSource, group_potential_duplicates
from context_engine.sources.warranties import WarrantiesSource

__all__ = [
    "AnalyticsSource",
    "ConversationsSource",
    "ReceiptsSource",
    "RetrievalResult",
    "RetrievalSource",
    "WarrantiesSource",
    "group_potential_duplicates",
]
