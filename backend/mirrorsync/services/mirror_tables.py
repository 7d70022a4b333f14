import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    delete,
    func,
    inspect,
)
from sqlalchemy.ext.asyncio import AsyncEngine

from mirrorsync.errors import SchemaError
from mirrorsync.services.identifiers import (
    BOOKKEEPING_COLUMNS,
    mirror_table_name,
    sanitize_identifier,
    source_table_name,
)
from mirrorsync.services.schema_inspector import ColumnInfo, read_page, reflect_table, row_count

logger = logging.getLogger(__name__)

_INTEGER_TYPES = {"int", "int2", "int4", "int8", "integer", "bigint", "smallint", "tinyint", "mediumint", "serial", "bigserial", "smallserial"}
_NUMERIC_TYPES = {"numeric", "decimal", "real", "float", "float4", "float8", "double", "double precision", "money"}
_BOOLEAN_TYPES = {"boolean", "bool"}
_DATE_TYPES = {"date"}
_TRUE_TEXT = {"1", "t", "true", "y", "yes", "on"}
_FALSE_TEXT = {"0", "f", "false", "n", "no", "off"}


def mirror_column_type(type_name: str):
    """Map a lower-cased source type name onto the mirror's column type."""
    base = type_name.lower().split("(", 1)[0].strip()
    if base in _INTEGER_TYPES:
        return BigInteger()
    if base in _NUMERIC_TYPES:
        return Numeric()
    if base in _BOOLEAN_TYPES:
        return Boolean()
    if base.startswith("timestamp") or base.startswith("datetime"):
        return DateTime()
    if base in _DATE_TYPES:
        return Date()
    return Text()


def mirror_column_name(name: str) -> str:
    return "id" if name.lower() == "id" else sanitize_identifier(name)


def build_mirror_table(mirror_name: str, columns: List[ColumnInfo], metadata: Optional[MetaData] = None) -> Table:
    """Mirror definition: sanitized source columns plus bookkeeping timestamps.

    The source ``id`` column is kept as a unique column; without one a
    surrogate auto-increment ``id`` primary key is added.
    """
    metadata = metadata if metadata is not None else MetaData()
    cols: list[Column] = []
    seen: set[str] = set()

    if not any(c.name.lower() == "id" for c in columns):
        cols.append(
            Column("id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
        )
        seen.add("id")

    for info in columns:
        name = mirror_column_name(info.name)
        if name.lower() in seen:
            raise SchemaError(f"Column {info.name!r} collides with another column after sanitizing")
        seen.add(name.lower())
        if name == "id":
            cols.append(Column("id", mirror_column_type(info.type), unique=True))
        else:
            cols.append(Column(name, mirror_column_type(info.type)))

    for name in BOOKKEEPING_COLUMNS:
        if name not in seen:
            cols.append(Column(name, DateTime(), server_default=func.now(), nullable=False))

    return Table(mirror_name, metadata, *cols)


def _parse_datetime(value: str) -> Optional[datetime]:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _parse_decimal(value: str) -> Optional[Decimal]:
    try:
        return Decimal(value.strip())
    except InvalidOperation:
        return None


def coerce_value(column: Column, value: Any) -> Any:
    """Adapt a source value to the mirror column it is written into.

    Drivers without type information (SQLite) hand dates and numbers over as
    text; those are parsed here. Text that does not parse is kept as is.
    """
    if value is None:
        return None
    col_type = column.type
    if isinstance(col_type, DateTime):
        if isinstance(value, str):
            value = _parse_datetime(value) or value
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(col_type, Date):
        if isinstance(value, str):
            parsed = _parse_datetime(value)
            return parsed.date() if parsed is not None else value
        if isinstance(value, datetime):
            return value.date()
        return value
    if isinstance(col_type, Boolean) and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_TEXT:
            return True
        if lowered in _FALSE_TEXT:
            return False
        return value
    if isinstance(col_type, (Integer, BigInteger)) and isinstance(value, str):
        parsed = _parse_decimal(value)
        if parsed is not None and parsed.is_finite() and parsed == parsed.to_integral_value():
            return int(parsed)
        return value
    if isinstance(col_type, Numeric) and isinstance(value, str):
        parsed = _parse_decimal(value)
        return parsed if parsed is not None else value
    if isinstance(col_type, Text) and not isinstance(value, str):
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).hex()
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value)
    return value


def to_mirror_row(mirror: Table, row: dict) -> dict:
    out = {}
    for key, value in row.items():
        name = mirror_column_name(key)
        if name in mirror.c:
            out[name] = coerce_value(mirror.c[name], value)
    return out


# ---------------------------------------------------------------------------
# Mirror lifecycle
# ---------------------------------------------------------------------------

async def ensure_mirror_table(
    engine: AsyncEngine, backend_name: str, table_name: str, columns: List[ColumnInfo]
) -> dict:
    """Create the mirror table for ``table_name`` unless it already exists.

    Returns ``{"created": bool, "table": Table}``. An existing mirror is
    reflected as-is; later source columns are not added to it.
    """
    name = mirror_table_name(backend_name, table_name)
    definition = build_mirror_table(name, columns)

    def _ensure(sync_conn):
        if inspect(sync_conn).has_table(name):
            return False, Table(name, MetaData(), autoload_with=sync_conn)
        definition.create(sync_conn)
        return True, definition

    async with engine.begin() as conn:
        created, mirror = await conn.run_sync(_ensure)

    if created:
        logger.info("Created mirror table %s (%d columns)", name, len(mirror.c))
    return {"created": created, "table": mirror}


async def list_mirror_tables(engine: AsyncEngine, backend_name: str) -> dict:
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        result = {}
        for name in sorted(names):
            original = source_table_name(backend_name, name)
            if original is None:
                continue
            result[name] = {"count": await row_count(conn, name), "originalTableName": original}
        return result


async def read_mirror_page(engine: AsyncEngine, backend_name: str, table_name: str, page: int = 1, limit: int = 50) -> dict:
    name = mirror_table_name(backend_name, table_name)
    async with engine.connect() as conn:
        mirror = await reflect_table(conn, name)
        page_data = await read_page(conn, name, [c.name for c in mirror.c], page, limit, descending=True)
    page_data["tableName"] = name
    return page_data


def _id_value(mirror: Table, record_id: str):
    if "id" not in mirror.c:
        raise SchemaError(f"Table {mirror.name!r} has no id column")
    if isinstance(mirror.c.id.type, (Integer, BigInteger)):
        try:
            return int(record_id)
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"Invalid record id {record_id!r}") from exc
    return record_id


async def delete_mirror_row(engine: AsyncEngine, backend_name: str, table_name: str, record_id: str) -> int:
    name = mirror_table_name(backend_name, table_name)
    async with engine.begin() as conn:
        mirror = await reflect_table(conn, name)
        result = await conn.execute(delete(mirror).where(mirror.c.id == _id_value(mirror, record_id)))
    logger.info("Deleted %d row(s) with id %s from %s", result.rowcount, record_id, name)
    return result.rowcount


async def purge_mirror_rows(
    engine: AsyncEngine,
    backend_name: str,
    table_name: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> int:
    """Delete every row, or the rows whose ``backup_created_at`` lies in [start, end]."""
    name = mirror_table_name(backend_name, table_name)
    async with engine.begin() as conn:
        mirror = await reflect_table(conn, name)
        stmt = delete(mirror)
        if start is not None or end is not None:
            if "backup_created_at" not in mirror.c:
                raise SchemaError(f"Table {name!r} has no backup_created_at column")
            created = mirror.c.backup_created_at
            if start is not None:
                stmt = stmt.where(created >= _naive_utc(start))
            if end is not None:
                stmt = stmt.where(created <= _naive_utc(end))
        result = await conn.execute(stmt)
    logger.info("Purged %d row(s) from %s", result.rowcount, name)
    return result.rowcount


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


async def purge_all_mirror_tables(
    engine: AsyncEngine,
    backend_name: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    """Purge every mirror table of a backend; returns rows deleted per source table."""
    deleted = {}
    for info in (await list_mirror_tables(engine, backend_name)).values():
        original = info["originalTableName"]
        deleted[original] = await purge_mirror_rows(engine, backend_name, original, start, end)
    return deleted
