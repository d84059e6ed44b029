"""Async engine, session factory, and declarative base."""

import enum
from collections.abc import AsyncGenerator

from sqlalchemy import Enum
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from cryobank.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    # Enum columns are VARCHAR holding the enum value (e.g. "frozen").
    type_annotation_map = {
        enum.Enum: Enum(
            enum.Enum,
            native_enum=False,
            values_callable=lambda cls: [member.value for member in cls],
        ),
    }


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session; commit on success, roll back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
