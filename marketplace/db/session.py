"""
Database session management.

Provides the async SQLAlchemy engine factory, a session factory, and
:func:`unit_of_work`, the transaction scope every multi-row write in the core
runs inside.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session

from marketplace.core.config import Settings


def build_engine(config: Settings) -> AsyncEngine:
    """Create the async engine for PostgreSQL or in-memory SQLite."""
    if config.USE_SQLITE:
        # StaticPool forces every connection to share the SAME in-memory
        # database; without it each connection would see an empty schema.
        from sqlalchemy.pool import StaticPool

        engine = create_async_engine(
            config.DATABASE_URL,
            echo=config.DEBUG,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # SQLite does not enforce FK constraints by default.  aiosqlite
        # delegates to a sync connection, so listen on the sync engine.
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        config.DATABASE_URL,
        echo=config.DEBUG,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_timeout=config.DB_POOL_TIMEOUT,
        pool_recycle=config.DB_POOL_RECYCLE,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: attribute access after commit must not trigger
    # a lazy load, which async sessions cannot perform implicitly.
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


# Set while the current transaction has flushed writes to the database;
# cleared when that transaction commits or rolls back.
_FLUSHED = "marketplace.flushed"


@event.listens_for(Session, "after_flush")
def _mark_flushed(session, flush_context):
    session.info[_FLUSHED] = True


@event.listens_for(Session, "after_commit")
@event.listens_for(Session, "after_rollback")
def _clear_flushed(session):
    session.info.pop(_FLUSHED, None)


def has_writes(session: AsyncSession) -> bool:
    """True if the session holds pending or already-flushed writes."""
    if session.new or session.dirty or session.deleted:
        return True
    return bool(session.info.get(_FLUSHED, False))


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run the enclosed block as one transaction.

    Commits on normal exit.  An exception raised after the block wrote
    anything rolls back every write made in it, so no reader ever sees part
    of a cascade, and is re-raised.

    A block rejected before it wrote anything (a failed precondition) ends
    its read-only transaction with a commit instead, so the instances the
    caller already holds stay loaded.
    """
    try:
        yield session
        await session.commit()
    except Exception as exc:
        if isinstance(exc, SQLAlchemyError) or has_writes(session):
            await session.rollback()
        else:
            await session.commit()
        raise
    except BaseException:
        await session.rollback()
        raise
