import logging
from typing import List

from sqlalchemy import Table, and_, insert, select, tuple_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from mirrorsync.config import settings
from mirrorsync.errors import ConfigurationError, RowError
from mirrorsync.services.identifiers import BOOKKEEPING_COLUMNS
from mirrorsync.services.mirror_tables import coerce_value
from mirrorsync.services.schema_inspector import json_safe

logger = logging.getLogger(__name__)


async def _end_implicit_transaction(conn: AsyncConnection) -> None:
    # Reflection and reads autobegin; per-row transactions need a clean connection
    if conn.in_transaction():
        await conn.commit()


# ---------------------------------------------------------------------------
# Backup: insert when absent, never overwrite
# ---------------------------------------------------------------------------

def identity_clause(table: Table, row: dict):
    """Match on ``id`` when present and not null, else on every provided column."""
    if "id" in row and row["id"] is not None and "id" in table.c:
        return table.c.id == row["id"]
    conditions = []
    for key, value in row.items():
        col = table.c[key]
        conditions.append(col.is_(None) if value is None else col == value)
    return and_(*conditions)


async def _backup_row(conn: AsyncConnection, mirror: Table, row: dict) -> bool:
    """Insert one row unless it is already mirrored. Returns True when inserted."""
    try:
        async with conn.begin():
            found = await conn.execute(select(1).select_from(mirror).where(identity_clause(mirror, row)).limit(1))
            if found.first() is not None:
                return False
            await conn.execute(insert(mirror).values(**row))
            return True
    except IntegrityError:
        # Lost a race with a concurrent backup or hit a unique constraint
        return False
    except (SQLAlchemyError, ValueError, TypeError) as exc:
        raise RowError(str(exc)) from exc


async def reconcile_backup(conn: AsyncConnection, mirror: Table, rows: List[dict]) -> dict:
    """Write source rows into the mirror, skipping rows it already holds."""
    await _end_implicit_transaction(conn)
    if rows and "id" not in rows[0]:
        logger.info("Mirror %s: no id column, matching rows on every column", mirror.name)

    inserted = skipped = 0
    for row in rows:
        try:
            if await _backup_row(conn, mirror, row):
                inserted += 1
            else:
                skipped += 1
        except RowError as exc:
            logger.error("Mirror %s: row %s failed: %s", mirror.name, row.get("id", "?"), exc)
    return {"inserted": inserted, "skipped": skipped}


# ---------------------------------------------------------------------------
# Upload: remote wins, always overwrite
# ---------------------------------------------------------------------------

def key_columns(remote: Table) -> List[str]:
    keys = [c.name for c in remote.primary_key.columns]
    return keys or ["id"]


def _insert_for(conn: AsyncConnection):
    dialect = conn.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        raise ConfigurationError(f"Upload is not supported for {dialect} databases")
    return dialect_insert


def upsert_statement(dialect_insert, remote: Table, row: dict, keys: List[str]):
    stmt = dialect_insert(remote).values(**row)
    updates = {name: stmt.excluded[name] for name in row if name not in keys}
    if updates:
        return stmt.on_conflict_do_update(index_elements=keys, set_=updates)
    return stmt.on_conflict_do_nothing(index_elements=keys)


def _strip(remote: Table, row: dict) -> dict:
    """Drop bookkeeping and unknown columns; adapt values to the remote types."""
    return {
        k: coerce_value(remote.c[k], v)
        for k, v in row.items()
        if k not in BOOKKEEPING_COLUMNS and k in remote.c
    }


def _key_of(row: dict, keys: List[str]):
    values = tuple(row.get(k) for k in keys)
    if any(v is None for v in values):
        return None
    return values


def _record_label(key):
    if key is None:
        return "unknown"
    if len(key) == 1:
        return json_safe(key[0])
    return [json_safe(v) for v in key]


async def _existing_keys(conn: AsyncConnection, remote: Table, keys: List[str], batch_keys: list) -> set:
    if not batch_keys or any(k not in remote.c for k in keys):
        return set()
    cols = [remote.c[k] for k in keys]
    if len(cols) == 1:
        stmt = select(cols[0]).where(cols[0].in_([k[0] for k in batch_keys]))
    else:
        stmt = select(*cols).where(tuple_(*cols).in_(batch_keys))
    async with conn.begin():
        result = await conn.execute(stmt)
        return {tuple(r) for r in result.all()}


async def reconcile_upload(conn: AsyncConnection, remote: Table, rows: List[dict]) -> dict:
    """Upsert mirror rows into the remote table.

    Key presence is probed per batch before writing so each row is counted
    as ``matched`` (already present, overwritten) or ``uploaded`` (new).
    """
    await _end_implicit_transaction(conn)
    dialect_insert = _insert_for(conn)
    keys = key_columns(remote)
    batch_size = settings.upload_batch_size

    uploaded = matched = 0
    errors: list[dict] = []

    for start in range(0, len(rows), batch_size):
        batch = [_strip(remote, r) for r in rows[start:start + batch_size]]
        batch_keys = [k for k in (_key_of(r, keys) for r in batch) if k is not None]
        try:
            present = await _existing_keys(conn, remote, keys, batch_keys)
        except SQLAlchemyError as exc:
            logger.warning("Upload %s: key probe failed: %s", remote.name, exc)
            present = set()

        for row in batch:
            key = _key_of(row, keys)
            record = _record_label(key)
            try:
                if key is None:
                    raise RowError(f"Missing primary key value for {', '.join(keys)}")
                async with conn.begin():
                    await conn.execute(upsert_statement(dialect_insert, remote, row, keys))
            except (RowError, SQLAlchemyError, ValueError, TypeError) as exc:
                logger.error("Upload %s: record %s failed: %s", remote.name, record, exc)
                errors.append({"record": record, "error": str(exc)})
                continue
            if key in present:
                matched += 1
            else:
                uploaded += 1

    return {"totalRecords": len(rows), "uploaded": uploaded, "matched": matched, "errors": errors}
