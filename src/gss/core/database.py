"""Database engine and session factory setup."""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_db_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create async database engine.

    PostgreSQL (postgresql+psycopg://...) is the production store. SQLite
    (sqlite+aiosqlite://...) is accepted for local runs and tests; it gets WAL
    journaling, a busy timeout and BEGIN IMMEDIATE transactions so concurrent
    workers queue for the write lock instead of failing on lock upgrade.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (PostgreSQL only)

    Returns:
        Async engine
    """
    if db_url.startswith("sqlite"):
        engine = create_async_engine(
            db_url,
            connect_args={"timeout": 30},
            echo=False,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            # Driver-level autocommit; transactions are opened in _sqlite_begin
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # Don't log SQL queries (use structlog instead)
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_db_engine(db_url, pool_size)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory
