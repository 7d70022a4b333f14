import logging

from fastapi import APIRouter, Query

from mirrorsync.deps import http_error
from mirrorsync.errors import MirrorSyncError
from mirrorsync.services.backends import require_backend, require_bucket_url, require_database_url
from mirrorsync.services.file_transfer import list_remote_files
from mirrorsync.services.schema_inspector import list_tables_with_counts, read_table_page
from mirrorsync.source_database import source_connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/sources/{backend_name}/tables")
async def get_source_tables(backend_name: str) -> dict:
    try:
        backend = await require_backend(backend_name)
        async with source_connection(require_database_url(backend)) as conn:
            return await list_tables_with_counts(conn)
    except MirrorSyncError as e:
        raise http_error(e)


@router.get("/sources/{backend_name}/tables/{table_name}")
async def get_source_table_data(
    backend_name: str,
    table_name: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=1000),
) -> dict:
    try:
        backend = await require_backend(backend_name)
        async with source_connection(require_database_url(backend)) as conn:
            return await read_table_page(conn, table_name, page, limit)
    except MirrorSyncError as e:
        raise http_error(e)


@router.get("/sources/{backend_name}/files")
async def get_source_files(backend_name: str) -> dict:
    try:
        backend = await require_backend(backend_name)
        return await list_remote_files(require_bucket_url(backend), backend.attributes)
    except MirrorSyncError as e:
        raise http_error(e)
