"""Async SQLAlchemy engine and session management for the role store."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from campus_roles.config import DatabaseConfig

logger = logging.getLogger(__name__)

# SQLAlchemy Base for ORM models
Base = declarative_base()


def create_engine_from_config(config: DatabaseConfig) -> AsyncEngine:
    """
    Create the async engine for the configured database URL.

    In-memory SQLite databases are bound to a single shared connection so
    that every session sees the same tables.
    """
    kwargs = {"echo": config.echo}
    if config.url.startswith("sqlite") and ":memory:" in config.url:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    elif not config.url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True

    logger.info("Creating database engine", extra={"database_url": _redact(config.url)})
    return create_async_engine(config.url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all role engine tables that do not exist yet."""
    # Register the models on Base.metadata
    from campus_roles.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Role engine tables initialized")


async def drop_models(engine: AsyncEngine) -> None:
    from campus_roles.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


def _redact(url: str) -> str:
    """Hide the password part of a database URL."""
    if "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    credentials, host = rest.rsplit("@", 1)
    user: Optional[str] = credentials.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"
