import logging
from typing import Optional

from mirrorsync.config import settings
from mirrorsync.database import engine as mirror_engine
from mirrorsync.errors import ConfigurationError
from mirrorsync.services import job_tracker
from mirrorsync.services.backends import require_backend, require_bucket_url, require_database_url
from mirrorsync.services.backup_service import backend_files_path
from mirrorsync.services.file_transfer import upload_files
from mirrorsync.services.identifiers import mirror_table_name, sanitize_identifier
from mirrorsync.services.job_runner import JobRunner
from mirrorsync.services.reconciler import reconcile_upload
from mirrorsync.services.schema_inspector import iter_table_pages, reflect_table
from mirrorsync.source_database import source_connection

logger = logging.getLogger(__name__)


async def upload_table(db_url: str, backend_name: str, table_name: str, job_id: Optional[str] = None) -> dict:
    """Push the mirror of ``table_name`` back into the backend database.

    The remote table must already exist; rows are upserted on its primary key.
    """
    table_name = sanitize_identifier(table_name)
    mirror_name = mirror_table_name(backend_name, table_name)
    totals = {"totalRecords": 0, "uploaded": 0, "matched": 0, "errors": []}

    async with mirror_engine.connect() as mirror_conn, source_connection(db_url) as remote_conn:
        mirror = await reflect_table(mirror_conn, mirror_name)
        remote = await reflect_table(remote_conn, table_name)
        if job_id:
            await job_tracker.update_progress(job_id, 30, f"Uploading {mirror_name} to {table_name}...")

        async for page in iter_table_pages(mirror_conn, mirror_name, [c.name for c in mirror.c], settings.source_page_size):
            counts = await reconcile_upload(remote_conn, remote, page)
            totals["totalRecords"] += counts["totalRecords"]
            totals["uploaded"] += counts["uploaded"]
            totals["matched"] += counts["matched"]
            totals["errors"].extend(counts["errors"])
            logger.info("Upload %s: table %s %d rows so far", backend_name, table_name, totals["totalRecords"])

    logger.info(
        "Upload %s: table %s uploaded=%d matched=%d errors=%d",
        backend_name, table_name, totals["uploaded"], totals["matched"], len(totals["errors"]),
    )
    return totals


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def _database_job(job_id: str, backend_name: str, table_name: str) -> dict:
    backend = await require_backend(backend_name)
    db_url = require_database_url(backend)
    await job_tracker.update_progress(job_id, 10, f"Reading local backup of {table_name}...")
    return await upload_table(db_url, backend_name, table_name, job_id)


async def _files_job(job_id: str, backend_name: str) -> dict:
    backend = await require_backend(backend_name)
    bucket_url = require_bucket_url(backend)
    await job_tracker.update_progress(job_id, 10, "Reading local files...")
    return await upload_files(backend_files_path(backend_name), bucket_url, backend.attributes)


async def start_upload(runner: JobRunner, kind: str, backend_name: str, table_name: Optional[str] = None) -> str:
    if kind == "database" and not table_name:
        raise ConfigurationError("tableName is required for database uploads")
    job_id = job_tracker.generate_job_id(backend_name, kind, "upload", table_name)
    await job_tracker.set_status(
        job_id,
        status="processing",
        operation="upload",
        kind=kind,
        backend_name=backend_name,
        table_name=table_name,
        progress=0,
        message="Upload process started...",
    )
    if kind == "database":
        runner.launch(job_id, lambda: _database_job(job_id, backend_name, table_name))
    else:
        runner.launch(job_id, lambda: _files_job(job_id, backend_name))
    logger.info("Upload job %s started (%s, %s)", job_id, kind, backend_name)
    return job_id
