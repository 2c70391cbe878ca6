"""Database engine and session factory lifecycle."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Serverless Postgres drops idle connections after a few minutes
POOL_RECYCLE_SECONDS = 300


def setup_db_session(db_url: str, pool_size: int = 50) -> async_sessionmaker[AsyncSession]:
    """Create the async engine and a session factory bound to it.

    Args:
        db_url: PostgreSQL connection URL (postgresql+psycopg://...)
        pool_size: Connections kept open; claim bursts beyond this wait for a slot

    Returns:
        Session factory; sessions keep attribute values after commit
    """
    engine = create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=POOL_RECYCLE_SECONDS,
        connect_args={"application_name": "qrclaim"},
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def close_db_session(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Dispose of the engine behind a session factory, closing pooled connections."""
    await session_factory.kw["bind"].dispose()
