"""Async database engine, session factory and migration helpers."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel.ext.asyncio.session import AsyncSession

from task_sync.core.config import PROJECT_ROOT, settings
from task_sync.core.logging import get_logger

if TYPE_CHECKING:
    from alembic.config import Config

ALEMBIC_INI_PATH = PROJECT_ROOT / "alembic.ini"
MIGRATIONS_PATH = PROJECT_ROOT / "migrations"

logger = get_logger(__name__)

engine: AsyncEngine = create_async_engine(settings.database_url, pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_maker() as session:
        yield session


def _alembic_config(database_url: str | None = None) -> Config:
    from alembic.config import Config

    config = Config(str(ALEMBIC_INI_PATH)) if Path(ALEMBIC_INI_PATH).exists() else Config()
    config.set_main_option("script_location", str(MIGRATIONS_PATH))
    # ConfigParser interpolation treats "%" specially.
    config.set_main_option("sqlalchemy.url", (database_url or settings.database_url).replace("%", "%%"))
    return config


def run_migrations(revision: str = "head", *, database_url: str | None = None) -> None:
    """Apply Alembic migrations up to ``revision``."""
    from alembic import command

    logger.info("db.migrations.upgrade", extra={"revision": revision})
    command.upgrade(_alembic_config(database_url), revision)

