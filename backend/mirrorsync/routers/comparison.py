import logging

from fastapi import APIRouter

from mirrorsync.database import engine as mirror_engine
from mirrorsync.deps import http_error
from mirrorsync.errors import MirrorSyncError
from mirrorsync.services.backends import require_backend, require_database_url
from mirrorsync.services.comparator import compare_backup_with_remote
from mirrorsync.source_database import source_connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/comparison/{backend_name}")
async def compare_backend(backend_name: str) -> dict:
    """Per-table progress of the mirror against the live backend database."""
    try:
        backend = await require_backend(backend_name)
        async with source_connection(require_database_url(backend)) as conn:
            return await compare_backup_with_remote(mirror_engine, conn, backend.name)
    except MirrorSyncError as e:
        raise http_error(e)
