# =============================================================================
# Database Package
# =============================================================================
# Provides async and sync SQLAlchemy engines, session management, and ORM
# models.
#
# Key exports:
#   - get_async_session: FastAPI dependency for database sessions
#   - get_sync_session: context manager for Celery workers
#   - Document, Chunk, Source, MemoryPattern: ORM models
# =============================================================================
