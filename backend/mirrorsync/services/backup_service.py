import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from mirrorsync.config import settings
from mirrorsync.database import engine as mirror_engine
from mirrorsync.errors import SchemaError, SourceConnectionError
from mirrorsync.services import job_tracker
from mirrorsync.services.backends import require_backend, require_bucket_url, require_database_url
from mirrorsync.services.file_transfer import backup_files
from mirrorsync.services.identifiers import sanitize_identifier
from mirrorsync.services.job_runner import JobRunner
from mirrorsync.services.mirror_tables import ensure_mirror_table, to_mirror_row
from mirrorsync.services.reconciler import reconcile_backup
from mirrorsync.services.schema_inspector import iter_table_pages, list_columns, list_tables
from mirrorsync.source_database import source_connection

logger = logging.getLogger(__name__)


def backend_files_path(backend_name: str) -> str:
    return str(Path(settings.backup_files_path) / sanitize_identifier(backend_name))


async def backup_table(conn, backend_name: str, table_name: str) -> dict:
    """Mirror one source table page by page; returns created/inserted/skipped."""
    columns = await list_columns(conn, table_name)
    ensured = await ensure_mirror_table(mirror_engine, backend_name, table_name, columns)
    mirror = ensured["table"]

    inserted = skipped = 0
    async with mirror_engine.connect() as mirror_conn:
        async for page in iter_table_pages(conn, table_name, [c.name for c in columns], settings.source_page_size):
            counts = await reconcile_backup(mirror_conn, mirror, [to_mirror_row(mirror, r) for r in page])
            inserted += counts["inserted"]
            skipped += counts["skipped"]
            logger.info("Backup %s: table %s %d rows so far", backend_name, table_name, inserted + skipped)

    logger.info("Backup %s: table %s inserted=%d skipped=%d", backend_name, table_name, inserted, skipped)
    return {"created": ensured["created"], "mirrorTable": mirror.name, "inserted": inserted, "skipped": skipped}


async def backup_database(db_url: str, backend_name: str, job_id: Optional[str] = None) -> dict:
    """Mirror every table of a backend database.

    A table that fails is recorded in ``errors`` and the walk continues;
    losing the source connection aborts the whole backup.
    """
    async with source_connection(db_url) as conn:
        tables = await list_tables(conn)
        results = {
            "totalTables": len(tables),
            "processedTables": 0,
            "createdTables": [],
            "insertedRecords": 0,
            "skippedRecords": 0,
            "errors": [],
        }
        for index, table_name in enumerate(tables):
            if job_id:
                await job_tracker.update_progress(
                    job_id,
                    10 + int(85 * index / max(len(tables), 1)),
                    f"Backing up table {table_name} ({index + 1}/{len(tables)})",
                )
            try:
                counts = await backup_table(conn, backend_name, table_name)
            except (SchemaError, SQLAlchemyError) as e:
                if isinstance(e, DBAPIError) and e.connection_invalidated:
                    raise SourceConnectionError(f"Lost connection to source database: {e}") from e
                logger.error("Backup %s: table %s failed: %s", backend_name, table_name, e)
                results["errors"].append({"table": table_name, "error": str(e)})
                if conn.in_transaction():
                    await conn.rollback()
                continue
            results["processedTables"] += 1
            results["insertedRecords"] += counts["inserted"]
            results["skippedRecords"] += counts["skipped"]
            if counts["created"]:
                results["createdTables"].append(counts["mirrorTable"])
    return results


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def _database_job(job_id: str, backend_name: str) -> dict:
    backend = await require_backend(backend_name)
    db_url = require_database_url(backend)
    await job_tracker.update_progress(job_id, 10, "Connecting to database...")
    return await backup_database(db_url, backend_name, job_id)


async def _files_job(job_id: str, backend_name: str) -> dict:
    backend = await require_backend(backend_name)
    bucket_url = require_bucket_url(backend)
    await job_tracker.update_progress(job_id, 10, "Fetching files from bucket...")
    return await backup_files(bucket_url, backend.attributes, backend_files_path(backend_name))


async def start_backup(runner: JobRunner, kind: str, backend_name: str, is_automatic: bool = False) -> str:
    """Create the job record and launch the backup in the background."""
    job_id = job_tracker.generate_job_id(backend_name, kind, "backup")
    await job_tracker.set_status(
        job_id,
        status="processing",
        operation="backup",
        kind=kind,
        backend_name=backend_name,
        progress=0,
        message="Backup process started...",
        is_automatic=is_automatic,
    )
    if kind == "database":
        runner.launch(job_id, lambda: _database_job(job_id, backend_name))
    else:
        runner.launch(job_id, lambda: _files_job(job_id, backend_name))
    logger.info("Backup job %s started (%s, %s)", job_id, kind, backend_name)
    return job_id
