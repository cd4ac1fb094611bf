from datetime import datetime, timezone

from fastapi.requests import HTTPConnection
from sqlalchemy import DateTime
from sqlalchemy.dialects import mysql
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

# Microsecond precision so that messages sent within the same second keep their order on MySQL
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_database_url(database_url: str) -> str:
    # Convert Railway-style MySQL URLs to aiomysql format
    if database_url.startswith("mysql://"):
        return "mysql+aiomysql://" + database_url[8:]
    database_url = database_url.replace("mysql+mysqldb://", "mysql+aiomysql://")
    database_url = database_url.replace("mysql+pymysql://", "mysql+aiomysql://")
    return database_url


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(database_url)
    if url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url):
        # In-memory SQLite must share a single connection across sessions
        return create_async_engine(
            url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,  # Reconnect on stale connections
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create the schema directly. Production deployments run the Alembic migrations instead."""
    import learnchat.models  # noqa: F401  (register mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(connection: HTTPConnection):
    async with connection.app.state.sessionmaker() as session:
        try:
            yield session
        finally:
            await session.close()
