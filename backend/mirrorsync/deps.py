from fastapi import HTTPException, Request

from mirrorsync.errors import (
    BackendNotFoundError,
    ConfigurationError,
    MirrorSyncError,
    SchemaError,
    SourceConnectionError,
)
from mirrorsync.services.auto_backup import AutoBackupScheduler
from mirrorsync.services.job_runner import JobRunner


def get_runner(request: Request) -> JobRunner:
    return request.app.state.job_runner


def get_auto_backup(request: Request) -> AutoBackupScheduler:
    return request.app.state.auto_backup


def http_error(e: MirrorSyncError) -> HTTPException:
    """Translate an engine error into the HTTP status the API reports."""
    if isinstance(e, BackendNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, SchemaError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SourceConnectionError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
