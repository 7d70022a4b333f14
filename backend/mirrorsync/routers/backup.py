import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mirrorsync.database import engine as mirror_engine
from mirrorsync.deps import get_runner, http_error
from mirrorsync.errors import MirrorSyncError
from mirrorsync.schemas.jobs import BackupRequest, JobKind, JobStarted
from mirrorsync.services import job_tracker
from mirrorsync.services.backends import require_backend, require_bucket_url, require_database_url
from mirrorsync.services.backup_service import backend_files_path, start_backup
from mirrorsync.services.file_transfer import compare_files, list_local_files
from mirrorsync.services.job_runner import JobRunner
from mirrorsync.services.mirror_tables import (
    delete_mirror_row,
    list_mirror_tables,
    purge_all_mirror_tables,
    purge_mirror_rows,
    read_mirror_page,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/backup", response_model=JobStarted, response_model_by_alias=True)
async def create_backup(body: BackupRequest, runner: JobRunner = Depends(get_runner)) -> JobStarted:
    try:
        backend = await require_backend(body.backend_name)
        if body.type == JobKind.database:
            require_database_url(backend)
        else:
            require_bucket_url(backend)
        job_id = await start_backup(runner, body.type.value, backend.name)
    except MirrorSyncError as e:
        raise http_error(e)
    return JobStarted(job_id=job_id, status_url=f"/api/backup/status/{job_id}", message="Backup process started in background")


# ---------------------------------------------------------------------------
# Job status
# ---------------------------------------------------------------------------

@router.get("/backup/status")
async def list_backup_statuses(
    backend_name: Optional[str] = Query(default=None, alias="backendName"),
    limit: int = Query(default=50, ge=1, le=500),
) -> list:
    return await job_tracker.list_statuses(backend_name, "backup", limit)


@router.get("/backup/status/{job_id}")
async def get_backup_status(job_id: str) -> dict:
    status = await job_tracker.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Backup job not found")
    return status


@router.delete("/backup/status/{job_id}")
async def delete_backup_status(job_id: str) -> dict:
    if not await job_tracker.delete_status(job_id):
        raise HTTPException(status_code=404, detail="Backup job not found")
    return {"message": "Backup status deleted successfully", "jobId": job_id}


# ---------------------------------------------------------------------------
# Mirror tables
# ---------------------------------------------------------------------------

@router.get("/backup/{backend_name}/tables")
async def get_mirror_tables(backend_name: str) -> dict:
    try:
        await require_backend(backend_name)
        return await list_mirror_tables(mirror_engine, backend_name)
    except MirrorSyncError as e:
        raise http_error(e)


@router.delete("/backup/{backend_name}/tables")
async def purge_backend_tables(
    backend_name: str,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
) -> dict:
    try:
        await require_backend(backend_name)
        deleted = await purge_all_mirror_tables(mirror_engine, backend_name, start_date, end_date)
    except MirrorSyncError as e:
        raise http_error(e)
    return {"deletedRecords": sum(deleted.values()), "tables": deleted}


@router.get("/backup/{backend_name}/tables/{table_name}")
async def get_mirror_table_data(
    backend_name: str,
    table_name: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=1000),
) -> dict:
    try:
        await require_backend(backend_name)
        return await read_mirror_page(mirror_engine, backend_name, table_name, page, limit)
    except MirrorSyncError as e:
        raise http_error(e)


@router.delete("/backup/{backend_name}/tables/{table_name}")
async def purge_mirror_table(
    backend_name: str,
    table_name: str,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
) -> dict:
    try:
        await require_backend(backend_name)
        deleted = await purge_mirror_rows(mirror_engine, backend_name, table_name, start_date, end_date)
    except MirrorSyncError as e:
        raise http_error(e)
    return {"deletedRecords": deleted}


@router.delete("/backup/{backend_name}/tables/{table_name}/rows/{record_id}")
async def delete_mirror_record(backend_name: str, table_name: str, record_id: str) -> dict:
    try:
        await require_backend(backend_name)
        deleted = await delete_mirror_row(mirror_engine, backend_name, table_name, record_id)
    except MirrorSyncError as e:
        raise http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Record not found")
    return {"deletedRecords": deleted}


# ---------------------------------------------------------------------------
# Mirrored files
# ---------------------------------------------------------------------------

@router.get("/backup/{backend_name}/files")
async def get_local_files(backend_name: str) -> dict:
    try:
        await require_backend(backend_name)
    except MirrorSyncError as e:
        raise http_error(e)
    return await list_local_files(backend_files_path(backend_name))


@router.get("/backup/{backend_name}/files/compare")
async def compare_backup_files(backend_name: str) -> dict:
    try:
        backend = await require_backend(backend_name)
        bucket_url = require_bucket_url(backend)
        comparison = await compare_files(bucket_url, backend.attributes, backend_files_path(backend_name))
    except MirrorSyncError as e:
        raise http_error(e)
    return {"backendName": backend_name, **comparison}
