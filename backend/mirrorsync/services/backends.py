import logging
from typing import List, Optional

from sqlalchemy import select

from mirrorsync.database import AsyncSessionLocal
from mirrorsync.errors import BackendNotFoundError, ConfigurationError
from mirrorsync.models.backend import Backend

logger = logging.getLogger(__name__)


async def resolve_backend(name: str) -> Optional[Backend]:
    async with AsyncSessionLocal() as db:
        return (await db.execute(select(Backend).where(Backend.name == name))).scalar_one_or_none()


async def list_backends() -> List[Backend]:
    async with AsyncSessionLocal() as db:
        return list((await db.execute(select(Backend).order_by(Backend.name))).scalars().all())


async def register_backend(
    name: str,
    db_url: Optional[str] = None,
    bucket_url: Optional[str] = None,
    attributes: Optional[dict] = None,
) -> Backend:
    """Insert or replace a backend registration (seeding and tests)."""
    async with AsyncSessionLocal() as db:
        backend = (await db.execute(select(Backend).where(Backend.name == name))).scalar_one_or_none()
        if backend is None:
            backend = Backend(name=name)
            db.add(backend)
        backend.db_url = db_url
        backend.bucket_url = bucket_url
        backend.attributes = dict(attributes or {})
        await db.commit()
        await db.refresh(backend)
        logger.info("Registered backend %s", name)
        return backend


async def require_backend(name: str) -> Backend:
    backend = await resolve_backend(name)
    if backend is None:
        raise BackendNotFoundError(f"Backend '{name}' not found")
    return backend


def require_database_url(backend: Backend) -> str:
    if not backend.db_url:
        raise ConfigurationError("Database URL not configured for this backend")
    return backend.db_url


def require_bucket_url(backend: Backend) -> str:
    if not backend.bucket_url:
        raise ConfigurationError("Bucket URL not configured for this backend")
    return backend.bucket_url
