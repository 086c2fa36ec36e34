from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ticketpulse.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


def upsert_insert(session: AsyncSession, table):
    """Return a dialect-specific INSERT that supports ON CONFLICT.

    PostgreSQL in production, SQLite under test. Both expose
    ``on_conflict_do_update`` / ``on_conflict_do_nothing`` with the same shape.
    """
    dialect = session.bind.dialect.name
    if dialect == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


async def get_db():
    """FastAPI dependency: yields AsyncSession per request."""
    async with async_session_factory() as session:
        yield session
