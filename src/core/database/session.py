from collections.abc import AsyncGenerator
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.core.config import settings

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.debug}
    if not url.startswith("sqlite"):
        options.update(
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return options


def _safe_url(url: str) -> str:
    return url.rsplit("@", 1)[1] if "@" in url else url.split("://", 1)[0]


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))
logger.info("Database engine created for %s", _safe_url(settings.database_url))

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session.

    Services commit their own units of work (a transition together with its
    billing event or audit row); anything left uncommitted when the request
    fails is rolled back here.
    """
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
