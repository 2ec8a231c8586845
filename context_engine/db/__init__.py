# =============================================================================
# Database Package — Async Engine and Read Sessions
# =============================================================================
#   - engine.py: lazily created async engine, session factory, read_session()
# =============================================================================
