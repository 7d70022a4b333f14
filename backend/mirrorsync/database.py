from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from mirrorsync.config import settings
from mirrorsync.source_database import normalize_url

engine = create_async_engine(normalize_url(settings.mirror_database_url), echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db() -> None:
    # Import all models so they are registered with Base.metadata
    from mirrorsync.models import backend, job_status  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
