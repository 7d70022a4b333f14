import logging

from fastapi import APIRouter, Depends, Query

from mirrorsync.deps import get_auto_backup, http_error
from mirrorsync.errors import MirrorSyncError
from mirrorsync.schemas.jobs import JobKind
from mirrorsync.services import job_tracker
from mirrorsync.services.auto_backup import AutoBackupConfig, AutoBackupScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/auto-backup/status")
async def auto_backup_status(auto_backup: AutoBackupScheduler = Depends(get_auto_backup)) -> dict:
    return auto_backup.status()


@router.post("/auto-backup/restart")
async def restart_auto_backup(
    config: AutoBackupConfig, auto_backup: AutoBackupScheduler = Depends(get_auto_backup)
) -> dict:
    try:
        status = auto_backup.restart(config)
    except MirrorSyncError as e:
        raise http_error(e)
    logger.info("Auto backup rescheduled: %s", status)
    return {"message": "Auto backup restarted", "status": status}


@router.get("/auto-backup/{kind}")
async def list_automatic_backups(kind: JobKind, limit: int = Query(default=50, ge=1, le=500)) -> dict:
    jobs = await job_tracker.list_statuses(operation="backup", limit=limit, kind=kind.value, is_automatic=True)
    return {"total": len(jobs), "data": jobs}
