# =============================================================================
# Background Workers — Bulk Re-embedding
# =============================================================================
#   - celery_app.py: Celery application (Redis broker db 0, results db 1)
#   - tasks.py:      warm_embedding_cache task
# =============================================================================
