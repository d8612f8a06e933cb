from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from models import Base
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./mockmate.db")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def make_session_factory(url: str) -> tuple:
    """Build an (engine, session factory) pair for a database other than the default."""
    other_engine = create_async_engine(url, echo=False)
    return other_engine, async_sessionmaker(other_engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with async_session() as session:
        yield session
