import json
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, AsyncIterator, List

from sqlalchemy import MetaData, Table, column, func, inspect, select, table
from sqlalchemy.exc import CompileError, NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from mirrorsync.errors import SchemaError
from mirrorsync.services.identifiers import sanitize_identifier

logger = logging.getLogger(__name__)

# Largest integer a JSON consumer can hold without losing precision
_MAX_SAFE_INT = 2**53 - 1


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type: str


def id_column_name(names) -> str | None:
    for n in names:
        if n.lower() == "id":
            return n
    return None


def json_safe(value: Any) -> Any:
    """Convert values JSON cannot carry faithfully into strings."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > _MAX_SAFE_INT else value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.loads(json.dumps(value, default=str))
    return str(value)


def json_safe_row(row: dict) -> dict:
    return {k: json_safe(v) for k, v in row.items()}


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------

async def list_tables(conn: AsyncConnection) -> List[str]:
    """Base tables of the connection's default schema, sorted by name."""
    names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return sorted(names)


def _type_name(sql_type, dialect) -> str:
    try:
        compiled = sql_type.compile(dialect=dialect)
    except CompileError:
        # Untyped columns (SQLite allows them) behave as text
        return "text"
    return compiled.lower()


async def list_columns(conn: AsyncConnection, table_name: str) -> List[ColumnInfo]:
    name = sanitize_identifier(table_name)

    def _columns(sync_conn):
        inspector = inspect(sync_conn)
        if not inspector.has_table(name):
            raise SchemaError(f"Table {name!r} not found")
        return [
            ColumnInfo(col["name"], _type_name(col["type"], sync_conn.dialect))
            for col in inspector.get_columns(name)
        ]

    try:
        return await conn.run_sync(_columns)
    except NoSuchTableError as exc:
        raise SchemaError(f"Table {name!r} not found") from exc


async def reflect_table(conn: AsyncConnection, table_name: str) -> Table:
    name = sanitize_identifier(table_name)
    try:
        return await conn.run_sync(lambda sync_conn: Table(name, MetaData(), autoload_with=sync_conn))
    except NoSuchTableError as exc:
        raise SchemaError(f"Table {name!r} not found") from exc


async def row_count(conn: AsyncConnection, table_name: str) -> int:
    """Best-effort row count; any failure yields 0."""
    try:
        name = sanitize_identifier(table_name)
        result = await conn.execute(select(func.count()).select_from(table(name)))
        return int(result.scalar() or 0)
    except (SchemaError, SQLAlchemyError) as exc:
        logger.warning("Row count for %s failed: %s", table_name, exc)
        if conn.in_transaction():
            await conn.rollback()
        return 0


async def list_tables_with_counts(conn: AsyncConnection) -> dict:
    result = {}
    for name in await list_tables(conn):
        result[name] = {"count": await row_count(conn, name)}
    return result


# ---------------------------------------------------------------------------
# Paged reads
# ---------------------------------------------------------------------------

def _paged_select(table_name: str, column_names: List[str], descending: bool = False):
    tbl = table(table_name, *[column(c) for c in column_names])
    id_name = id_column_name(column_names)
    if id_name is not None:
        order = [tbl.c[id_name].desc() if descending else tbl.c[id_name]]
    else:
        order = [tbl.c[c] for c in column_names]
    return select(*tbl.c).order_by(*order)


async def iter_table_pages(
    conn: AsyncConnection, table_name: str, column_names: List[str], page_size: int
) -> AsyncIterator[List[dict]]:
    """Yield the table in LIMIT/OFFSET pages ordered by ``id`` (or every column)."""
    stmt = _paged_select(sanitize_identifier(table_name), column_names)
    offset = 0
    while True:
        result = await conn.execute(stmt.limit(page_size).offset(offset))
        rows = [dict(r) for r in result.mappings().all()]
        if not rows:
            break
        yield rows
        if len(rows) < page_size:
            break
        offset += page_size


async def read_page(
    conn: AsyncConnection,
    table_name: str,
    column_names: List[str],
    page: int,
    limit: int,
    descending: bool = False,
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    total = await row_count(conn, table_name)
    stmt = _paged_select(sanitize_identifier(table_name), column_names, descending)
    result = await conn.execute(stmt.limit(limit).offset((page - 1) * limit))
    return {
        "data": [json_safe_row(dict(r)) for r in result.mappings().all()],
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if total else 0,
    }


async def read_table_page(conn: AsyncConnection, table_name: str, page: int = 1, limit: int = 50) -> dict:
    columns = await list_columns(conn, table_name)
    return await read_page(conn, table_name, [c.name for c in columns], page, limit)
