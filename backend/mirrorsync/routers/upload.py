import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mirrorsync.deps import get_runner, http_error
from mirrorsync.errors import MirrorSyncError
from mirrorsync.schemas.jobs import JobKind, JobStarted, UploadRequest
from mirrorsync.services import job_tracker
from mirrorsync.services.backends import require_backend, require_bucket_url, require_database_url
from mirrorsync.services.job_runner import JobRunner
from mirrorsync.services.upload_service import start_upload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/upload", response_model=JobStarted)
async def create_upload(body: UploadRequest, runner: JobRunner = Depends(get_runner)) -> JobStarted:
    try:
        backend = await require_backend(body.backend_name)
        if body.type == JobKind.database:
            require_database_url(backend)
        else:
            require_bucket_url(backend)
        job_id = await start_upload(runner, body.type.value, backend.name, body.table_name)
    except MirrorSyncError as e:
        raise http_error(e)
    return JobStarted(job_id=job_id, status_url=f"/api/upload/status/{backend.name}", message="Upload process started in background")


@router.get("/upload/status/{backend_name}")
async def list_upload_statuses(
    backend_name: str,
    limit: int = Query(default=50, ge=1, le=500),
    job_id: Optional[str] = Query(default=None, alias="jobId"),
) -> list:
    if job_id:
        status = await job_tracker.get_status(job_id)
        if status is None or status["backendName"] != backend_name or status["operation"] != "upload":
            raise HTTPException(status_code=404, detail="Upload job not found")
        return [status]
    return await job_tracker.list_statuses(backend_name, "upload", limit)


@router.delete("/upload/status/{job_id}")
async def delete_upload_status(job_id: str) -> dict:
    if not await job_tracker.delete_status(job_id):
        raise HTTPException(status_code=404, detail="Upload job not found")
    return {"message": "Upload status deleted successfully", "jobId": job_id}
