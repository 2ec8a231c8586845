# =============================================================================
# Celery Task Definitions — Bulk Embedding Cache Warm-up
# =============================================================================
#
# warm_embedding_cache(record_type, records)
#   1. Build the content text of each record (services/content.py)
#   2. Embed the texts through EmbeddingGateway.embed_many:
#      batches of embedding_batch_size, at most embedding_max_in_flight
#      provider calls at once, cached texts skipped
#   3. Return a summary: total / succeeded / failed / cached / skipped
#
# IMPORTANT: Celery tasks are synchronous. The async gateway runs inside
# asyncio.run(), with a cache and provider created for this task run and
# closed before it returns.
#
# RETRY STRATEGY:
# max_retries=3, 60s default delay. A run where every text failed is
# treated as a provider outage and retried; partial failures are reported
# in the summary instead. An unknown record type is a caller error and
# fails immediately.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from context_engine.config import Settings, get_settings
from context_engine.errors import EmbeddingUnavailable
from context_engine.services.cache import create_cache
from context_engine.services.content import CONTENT_BUILDERS, build_content_text
from context_engine.services.embedder import EmbeddingGateway, OpenAIEmbeddingProvider
from context_engine.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


async def warm_records(
    gateway: EmbeddingGateway,
    record_type: str,
    records: Sequence[Mapping[str, Any]],
) -> dict[str, Any]:
    """Embed the content text of each record; records with no text are skipped."""
    texts = [build_content_text(record_type, record) for record in records]
    non_empty = [text for text in texts if text.strip()]

    results = await gateway.embed_many(non_empty)
    succeeded = sum(1 for r in results if r.success)

    return {
        "record_type": record_type,
        "total": len(records),
        "skipped": len(texts) - len(non_empty),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "cached": sum(1 for r in results if r.cached),
    }


async def _warm(
    record_type: str,
    records: Sequence[Mapping[str, Any]],
    settings: Settings,
) -> dict[str, Any]:
    cache = await create_cache(settings)
    try:
        gateway = EmbeddingGateway(OpenAIEmbeddingProvider(settings), cache, settings)
        return await warm_records(gateway, record_type, records)
    finally:
        await cache.aclose()


# ---------------------------------------------------------------------------
# Warm-up Task
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="warm_embedding_cache",
    max_retries=3,
    default_retry_delay=60,
)
def warm_embedding_cache(
    self,
    record_type: str,
    records: list[dict[str, Any]],
) -> dict[str, Any]:
    """
    Pre-compute embeddings for a batch of receipts, warranties or messages.

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        record_type: "receipt", "warranty" or "conversation".
        records: Persistence rows as plain dicts.

    Returns:
        dict with total, skipped, succeeded, failed and cached counts.
    """
    task_id = self.request.id
    if record_type not in CONTENT_BUILDERS:
        raise ValueError(f"Unknown record type: {record_type}")

    logger.info(
        "[%s] Warming embedding cache: %d %s records",
        task_id, len(records), record_type,
    )
    summary = asyncio.run(_warm(record_type, records, get_settings()))

    if summary["failed"] and not summary["succeeded"]:
        exc = EmbeddingUnavailable(
            RuntimeError(f"all {summary['failed']} texts failed to embed")
        )
        logger.warning("[%s] %s; retrying", task_id, exc)
        raise self.retry(exc=exc)

    logger.info("[%s] Warm-up complete: %s", task_id, summary)
    return summary
