"""
IoTV Monitor - Database Configuration
Async SQLAlchemy (PostgreSQL via asyncpg, SQLite via aiosqlite for development)
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


async def create_tables() -> None:
    """Create all tables (development setups without alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
