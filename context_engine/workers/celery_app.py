# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the bulk re-embedding work that sits outside the query path:
# when receipts, warranties or messages are imported in bulk, their content
# text is embedded ahead of time so the first queries hit a warm cache.
#
# ARCHITECTURE:
# ┌──────────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ Import job   │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │ (producer)   │     │(broker)│    │ (consumer)   │     │(result)│
# └──────────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ───────────────┘                                  └── db 1
#
# The worker writes embeddings into the context engine cache (Redis db 2),
# the same cache the query path reads.
# =============================================================================

from celery import Celery

from context_engine.config import settings

celery_app = Celery(
    "context_engine.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: task arguments are plain record dicts.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge after completion so a crashed worker's batch is re-queued.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # A batch of a few thousand records finishes well inside 5 minutes at
    # 10 requests in flight; the hard limit stops a stuck provider call.
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    include=["context_engine.workers.tasks"],
)
