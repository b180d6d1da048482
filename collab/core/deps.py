from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from collab.db.session import async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    Services commit their own units of work; anything left uncommitted
    when the request fails is rolled back before the session closes.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
