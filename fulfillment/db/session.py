"""Fulfillment — Async SQLAlchemy session and engine."""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fulfillment.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    echo=settings.DEBUG,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)
