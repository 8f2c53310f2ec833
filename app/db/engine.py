# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines share one PostgreSQL database:
#
#   - async (asyncpg): FastAPI routes, the research orchestrator, memory
#     writes and retrieval counters. Everything on the event loop.
#   - sync (psycopg2): Celery workers (ingestion, source fetching), which
#     run plain blocking code.
#
# COMMIT POLICY:
#   1. get_async_session (via Depends) commits when the handler returns and
#      rolls back on exception.
#   2. async_session_factory() used directly (memory store, retrieval
#      counters, streaming research runs) must commit explicitly, because
#      those writes outlive or run beside the request lifecycle.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# echo follows settings.debug. The pool is sized for the API plus a few
# concurrent research runs (agent_pool_max_width) each holding a session
# for memory lookups and counter updates.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: ORM objects stay readable after commit, outside
# the session that loaded them (results are handed to the streaming layer).
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — Celery Workers (Lazy)
# ---------------------------------------------------------------------------
# Created on first use so processes that never touch the sync path (the
# API server) do not need a psycopg2 connection.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Sync session for Celery tasks: commit on clean exit, rollback and
    re-raise on error, always close.

        with get_sync_session() as session:
            doc = session.get(Document, document_id)
            doc.status = DocumentStatus.COMPLETED
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed on success."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
