import logging
import math
from datetime import date, datetime
from decimal import Decimal
from typing import List

from sqlalchemy import Column, column, inspect, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from mirrorsync.config import settings
from mirrorsync.errors import SchemaError
from mirrorsync.services.identifiers import is_internal_table, mirror_table_name, source_table_name
from mirrorsync.services.mirror_tables import coerce_value, mirror_column_name
from mirrorsync.services.schema_inspector import (
    id_column_name,
    iter_table_pages,
    json_safe,
    json_safe_row,
    list_columns,
    list_tables,
    reflect_table,
    row_count,
)

logger = logging.getLogger(__name__)

MISSING_SAMPLE_LIMIT = 100


def backup_progress(mirror_count: int, remote_count: int) -> int:
    """Percentage in [0, 100]; exactly 100 only when the mirror holds everything."""
    if remote_count <= 0:
        return 100 if mirror_count > 0 else 0
    if mirror_count >= remote_count:
        return 100
    return min(99, math.floor(mirror_count / remote_count * 100 + 0.5))


def backup_state(progress: int, mirror_count: int) -> str:
    if progress == 100:
        return "fully_backed_up"
    if mirror_count > 0:
        return "partially_backed_up"
    return "not_backed_up"


def _canonical(value):
    """Comparable form of a value already adapted to its mirror column."""
    if value is None or isinstance(value, (bool, int, Decimal)):
        return value
    if isinstance(value, float):
        # Shortest repr, so REAL 1.1 equals a NUMERIC 1.1
        return Decimal(repr(value)) if math.isfinite(value) else repr(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _identity(mirror_columns: List[Column], values) -> tuple:
    return tuple(_canonical(coerce_value(col, v)) for col, v in zip(mirror_columns, values))


async def _mirror_tables(mirror: AsyncConnection, backend_name: str) -> dict:
    """Mirror table name -> source table name for this backend."""
    names = await mirror.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    result = {}
    for name in names:
        original = source_table_name(backend_name, name)
        if original is not None and not is_internal_table(original):
            result[name] = original
    return result


async def _mirror_identities(mirror: AsyncConnection, mirror_name: str, mirror_columns: List[Column]) -> set:
    tbl = table(mirror_name, *[column(c.name) for c in mirror_columns])
    result = await mirror.execute(select(*tbl.c))
    return {_identity(mirror_columns, row) for row in result}


async def find_missing_records(
    remote: AsyncConnection, mirror: AsyncConnection, table_name: str, mirror_name: str
) -> dict:
    """Remote rows whose identity is absent from the mirror.

    Identity is the ``id`` value when the table has one, else the full row.
    Both sides are normalized through the mirror's column types first. The
    count is exact; ids and records are capped at the sample limit.
    """
    remote_columns = [c.name for c in await list_columns(remote, table_name)]
    mirror_table = await reflect_table(mirror, mirror_name)
    id_name = id_column_name(remote_columns)
    if id_name:
        identity_columns = [id_name]
    else:
        logger.info("Comparison of %s: no id column, matching rows on every column", table_name)
        # Columns added to the source after the mirror was created cannot match
        identity_columns = [c for c in remote_columns if mirror_column_name(c) in mirror_table.c]
    mirror_columns = [mirror_table.c[mirror_column_name(c)] for c in identity_columns]

    present = await _mirror_identities(mirror, mirror_name, mirror_columns)

    total = 0
    ids: list = []
    records: list = []
    async for page in iter_table_pages(remote, table_name, remote_columns, settings.source_page_size):
        for row in page:
            if _identity(mirror_columns, [row[c] for c in identity_columns]) in present:
                continue
            total += 1
            if len(records) < MISSING_SAMPLE_LIMIT:
                records.append(json_safe_row(row))
                if id_name:
                    ids.append(json_safe(row[id_name]))
    return {"totalMissing": total, "ids": ids, "records": records}


async def compare_backup_with_remote(mirror_engine: AsyncEngine, remote: AsyncConnection, backend_name: str) -> dict:
    remote_tables = [t for t in await list_tables(remote) if not is_internal_table(t)]

    async with mirror_engine.connect() as mirror:
        mirrored = await _mirror_tables(mirror, backend_name)
        report = {
            "backendName": backend_name,
            "totalRemoteTables": len(remote_tables),
            "totalBackupTables": len(mirrored),
            "tablesComparison": [],
            "missingInBackup": [],
            "missingInRemote": [],
            "summary": {"fullyBackedUp": 0, "partiallyBackedUp": 0, "notBackedUp": 0, "missingInRemote": 0},
        }

        for table_name in remote_tables:
            remote_count = await row_count(remote, table_name)
            try:
                mirror_name = mirror_table_name(backend_name, table_name)
            except SchemaError:
                mirror_name = None

            if mirror_name is None or mirror_name not in mirrored:
                report["summary"]["notBackedUp"] += 1
                report["missingInBackup"].append(
                    {"tableName": table_name, "remoteCount": remote_count, "backupCount": 0, "progress": 0}
                )
                report["tablesComparison"].append(
                    _table_entry(table_name, None, remote_count, 0, 0, "not_backed_up")
                )
                continue

            mirror_count = await row_count(mirror, mirror_name)
            progress = backup_progress(mirror_count, remote_count)
            state = backup_state(progress, mirror_count)
            entry = _table_entry(table_name, mirror_name, remote_count, mirror_count, progress, state)

            if mirror_count < remote_count:
                try:
                    missing = await find_missing_records(remote, mirror, table_name, mirror_name)
                except (SchemaError, SQLAlchemyError) as exc:
                    logger.warning("Comparison of %s: missing records unavailable: %s", table_name, exc)
                    if remote.in_transaction():
                        await remote.rollback()
                    if mirror.in_transaction():
                        await mirror.rollback()
                else:
                    entry["missingRecordsCount"] = missing["totalMissing"]
                    entry["missingRecordsIds"] = missing["ids"]
                    entry["missingRecords"] = missing["records"]

            key = {"fully_backed_up": "fullyBackedUp", "partially_backed_up": "partiallyBackedUp"}.get(state, "notBackedUp")
            report["summary"][key] += 1
            report["tablesComparison"].append(entry)

        remote_set = set(remote_tables)
        for mirror_name, original in sorted(mirrored.items()):
            if original in remote_set:
                continue
            report["missingInRemote"].append({
                "tableName": original,
                "backupTableName": mirror_name,
                "backupCount": await row_count(mirror, mirror_name),
                "remoteCount": 0,
            })
            report["summary"]["missingInRemote"] += 1

    return report


def _table_entry(table_name, mirror_name, remote_count, mirror_count, progress, state) -> dict:
    return {
        "tableName": table_name,
        "backupTableName": mirror_name,
        "remoteCount": remote_count,
        "backupCount": mirror_count,
        "difference": max(remote_count - mirror_count, 0),
        "progress": progress,
        "status": state,
        "missingRecordsCount": 0,
        "missingRecordsIds": [],
        "missingRecords": [],
    }
