from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator

from fastapi import Request

# Create declarative base
Base = declarative_base()


class Database:
    """Owns the async engine and session factory for one process.

    Built once in the application lifespan and handed to whatever needs
    storage access; nothing in the package reaches for a module-level engine.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(url, echo=echo)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def session(self) -> AsyncSession:
        """Open a new session; use as an async context manager."""
        return self.session_maker()

    async def create_all(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get database session."""
    database: Database = request.app.state.database
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
