import logging
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, select, update

from mirrorsync.database import AsyncSessionLocal
from mirrorsync.errors import JobStateError
from mirrorsync.models.job_status import FAILED, PROCESSING, TERMINAL_STATUSES, JobStatus

logger = logging.getLogger(__name__)

_JOB_ID_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class JobPatch(BaseModel):
    """Fields written by one ``set_status`` call; unset fields are left alone."""

    status: Optional[Literal["processing", "completed", "failed"]] = None
    operation: Optional[Literal["backup", "upload"]] = None
    kind: Optional[Literal["database", "files"]] = None
    backend_name: Optional[str] = None
    table_name: Optional[str] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    message: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    is_automatic: Optional[bool] = None


def generate_job_id(backend_name: str, kind: str, operation: str = "backup", table_name: Optional[str] = None) -> str:
    """``<backend>_<kind>_<ms>_<hex>`` for backups, ``upload_<backend>_<kind>[_<table>]_<ms>_<hex>`` for uploads.

    The random tail keeps ids distinct when two jobs start in the same millisecond.
    """
    stamp = f"{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    backend = _JOB_ID_UNSAFE.sub("_", backend_name)
    if operation == "upload":
        parts = ["upload", backend, kind]
        if table_name:
            parts.append(_JOB_ID_UNSAFE.sub("_", table_name))
        return "_".join(parts + [stamp])
    return f"{backend}_{kind}_{stamp}"


async def set_status(job_id: str, patch: JobPatch | None = None, **fields) -> dict:
    """Create or sparsely update a job record.

    A new record needs ``kind``, ``backend_name`` and ``operation``; without
    them nothing is written. Terminal records cannot change status.
    """
    patch = patch or JobPatch(**fields)
    values = patch.model_dump(exclude_unset=True)

    async with AsyncSessionLocal() as db:
        job = (await db.execute(select(JobStatus).where(JobStatus.job_id == job_id))).scalar_one_or_none()

        if job is None:
            missing = [k for k in ("kind", "backend_name", "operation") if not values.get(k)]
            if missing:
                raise JobStateError(f"Cannot create job {job_id}: missing {', '.join(missing)}")
            job = JobStatus(job_id=job_id, status=PROCESSING, progress=0, is_automatic=False)
            db.add(job)
        elif job.status in TERMINAL_STATUSES and values.get("status", job.status) != job.status:
            raise JobStateError(f"Job {job_id} is already {job.status}")

        for key, value in values.items():
            setattr(job, key, value)
        job.updated_at = datetime.now(timezone.utc)
        await db.commit()
        await db.refresh(job)

        if "status" in values:
            logger.info("Job %s -> %s", job_id, job.status)
        return job.to_dict()


async def update_progress(job_id: str, progress: int, message: Optional[str] = None) -> bool:
    """Advance a running job's progress.

    A deleted or finished record is left alone: deleting a job only removes
    its tracking, so the work keeps going without it.
    """
    patch = JobPatch(progress=progress, message=message)
    values = patch.model_dump(exclude_none=True)
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            update(JobStatus)
            .where(JobStatus.job_id == job_id, JobStatus.status == PROCESSING)
            .values(**values, updated_at=datetime.now(timezone.utc))
        )
        await db.commit()
    if not result.rowcount:
        logger.info("Job %s: no running record, progress %d not tracked", job_id, progress)
        return False
    return True


async def get_status(job_id: str) -> Optional[dict]:
    async with AsyncSessionLocal() as db:
        job = (await db.execute(select(JobStatus).where(JobStatus.job_id == job_id))).scalar_one_or_none()
        return job.to_dict() if job else None


async def list_statuses(
    backend_name: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 50,
    kind: Optional[str] = None,
    is_automatic: Optional[bool] = None,
) -> List[dict]:
    """Newest jobs first, optionally narrowed by backend, operation, kind and trigger."""
    stmt = select(JobStatus).order_by(JobStatus.created_at.desc(), JobStatus.id.desc()).limit(limit)
    if backend_name:
        stmt = stmt.where(JobStatus.backend_name == backend_name)
    if operation:
        stmt = stmt.where(JobStatus.operation == operation)
    if kind:
        stmt = stmt.where(JobStatus.kind == kind)
    if is_automatic is not None:
        stmt = stmt.where(JobStatus.is_automatic == is_automatic)
    async with AsyncSessionLocal() as db:
        return [job.to_dict() for job in (await db.execute(stmt)).scalars().all()]


async def delete_status(job_id: str) -> bool:
    """Remove tracking only; work already running is not stopped."""
    async with AsyncSessionLocal() as db:
        result = await db.execute(delete(JobStatus).where(JobStatus.job_id == job_id))
        await db.commit()
        return result.rowcount > 0


async def sweep_expired(days: int) -> int:
    """Delete terminal jobs created more than ``days`` days ago."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            delete(JobStatus).where(
                JobStatus.status.in_(TERMINAL_STATUSES),
                JobStatus.created_at < cutoff,
            )
        )
        await db.commit()
    if result.rowcount:
        logger.info("Swept %d job record(s) older than %d days", result.rowcount, days)
    return result.rowcount


async def mark_interrupted() -> int:
    """Fail jobs a previous process left in ``processing``."""
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            update(JobStatus)
            .where(JobStatus.status == PROCESSING)
            .values(status=FAILED, error="Interrupted by restart", updated_at=datetime.now(timezone.utc))
        )
        await db.commit()
    if result.rowcount:
        logger.info("Marked %d interrupted job(s) as failed", result.rowcount)
    return result.rowcount
