"""
Async DB layer for tasks and their time fields.
Uses SQLAlchemy 2.0 + asyncpg (Postgres) or aiosqlite (tests / local dev).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, func
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from config import settings


# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass


# ──────────────────────────────────────────────────────────────────────
# 2. Engine / session factory (owned by the process entry point)
# ──────────────────────────────────────────────────────────────────────
def build_url(url: Optional[str] = None) -> str:
    url = url or settings.DATABASE_URL or settings.DATABASE_PUBLIC_URL
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith("sqlite"):
        return url if "+aiosqlite" in url else url.replace("sqlite", "sqlite+aiosqlite", 1)
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url


def make_engine(url: Optional[str] = None) -> AsyncEngine:
    url = build_url(url)
    if url.startswith("sqlite"):
        # one shared connection so in-memory databases survive across sessions
        return create_async_engine(
            url, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    return create_async_engine(url, pool_size=5, max_overflow=5, pool_pre_ping=True)


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Tag a stored instant as UTC. SQLite hands timestamps back naive."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    user_id:        Mapped[str] = mapped_column(String(64), primary_key=True)
    phone_number:   Mapped[Optional[str]] = mapped_column(String(32), index=True)
    phone_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    first_name:     Mapped[Optional[str]] = mapped_column(String(120))
    time_zone:      Mapped[Optional[str]] = mapped_column(String(64))
    created_at:     Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Task(Base):
    __tablename__ = "tasks"

    task_id:         Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id:         Mapped[str] = mapped_column(
        ForeignKey("users.user_id", ondelete="CASCADE"), index=True
    )
    content:         Mapped[str] = mapped_column(Text)
    time_type:       Mapped[str] = mapped_column(String(16), default="none")
    # time value: pending phrase + its reference instant, or a resolved UTC instant
    time_text:       Mapped[Optional[str]] = mapped_column(Text)
    time_noted_at:   Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    time_at:         Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reminder_offset: Mapped[Optional[int]]
    reminder_sent:   Mapped[bool] = mapped_column(Boolean, default=False)
    created_at:      Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at:      Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup)
# ──────────────────────────────────────────────────────────────────────
async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine(engine: AsyncEngine) -> None:
    await engine.dispose()
