"""Database connection and session management."""

from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from waconnect.settings import get_async_database_url


def configure_sqlite(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own SQLite transactions so SAVEPOINTs nest correctly.

    The driver otherwise opens transactions only before DML, and a SAVEPOINT
    issued first becomes the outer transaction. WAL keeps readers from
    blocking the background tasks' writers.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


database_url = get_async_database_url()

# SQLite has no connection pool to health-check
engine = create_async_engine(
    database_url,
    echo=False,
    pool_pre_ping=not database_url.startswith("sqlite"),
)
if database_url.startswith("sqlite"):
    configure_sqlite(engine)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session. Services commit; anything left open is rolled back."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
