from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from .config import settings

# Ensure the DATABASE_URL uses an async driver (asyncpg) for SQLAlchemy asyncio
if settings.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in settings.DATABASE_URL:
    raise RuntimeError(
        "DATABASE_URL must use an async driver for async SQLAlchemy (e.g. postgresql+asyncpg://...). "
        "Update your DATABASE_URL or set the DATABASE_URL environment variable accordingly."
    )


def make_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    url = url or settings.DATABASE_URL
    if url.startswith("postgresql"):
        kwargs.setdefault("pool_size", settings.DB_POOL_SIZE)
        kwargs.setdefault("max_overflow", settings.DB_MAX_OVERFLOW)
        kwargs.setdefault("pool_timeout", settings.DB_POOL_TIMEOUT)
        kwargs.setdefault("pool_recycle", settings.DB_POOL_RECYCLE)
    return create_async_engine(url, echo=settings.DB_ECHO, **kwargs)


engine: AsyncEngine = make_engine()


async def init_db(target: AsyncEngine | None = None):
    from .models import metadata
    async with (target or engine).begin() as conn:
        await conn.run_sync(metadata.create_all)
