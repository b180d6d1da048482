from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from collab.core.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (tests, local runs) has no server-side pool to size or ping
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

# Shared by the API, the socket handler, the Celery workers and the reconciler
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
