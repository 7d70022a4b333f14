import pytest
from sqlalchemy import func, select, table

from mirrorsync.services.backup_service import backup_database
from mirrorsync.services.identifiers import mirror_table_name
from mirrorsync.services.mirror_tables import ensure_mirror_table
from mirrorsync.services.reconciler import reconcile_backup
from mirrorsync.services.schema_inspector import ColumnInfo
from mirrorsync.services.upload_service import upload_table

_WIDGETS = """
CREATE TABLE widgets (id INTEGER PRIMARY KEY, name TEXT, price NUMERIC);
INSERT INTO widgets VALUES (1, 'bolt', 1), (2, 'nut', 2), (3, 'gear', 3), (4, 'cog', 4), (5, 'pin', NULL);
"""

_EVENTS = """
CREATE TABLE events (kind TEXT, amount INTEGER, note TEXT);
INSERT INTO events VALUES ('open', 1, NULL), ('close', 2, 'done'), ('open', 3, 'again');
"""


async def _count(engine, table_name: str) -> int:
    async with engine.connect() as conn:
        return (await conn.execute(select(func.count()).select_from(table(table_name)))).scalar()


@pytest.mark.asyncio
async def test_backup_twice_is_idempotent(mirror_db, make_source):
    url = make_source("acme", _WIDGETS + _EVENTS)

    first = await backup_database(url, "acme")
    second = await backup_database(url, "acme")

    assert first["totalTables"] == 2
    assert first["processedTables"] == 2
    assert first["insertedRecords"] == 8
    assert sorted(first["createdTables"]) == ["backup_acme__events", "backup_acme__widgets"]
    assert first["errors"] == []

    assert second["insertedRecords"] == 0
    assert second["skippedRecords"] == 8
    assert second["createdTables"] == []
    assert await _count(mirror_db, mirror_table_name("acme", "widgets")) == 5
    assert await _count(mirror_db, mirror_table_name("acme", "events")) == 3


@pytest.mark.asyncio
async def test_backup_picks_up_new_rows_only(mirror_db, make_source):
    url = make_source("acme", _WIDGETS)
    await backup_database(url, "acme")
    make_source("acme", "INSERT INTO widgets VALUES (6, 'axle', 6); UPDATE widgets SET name = 'renamed' WHERE id = 1;")

    result = await backup_database(url, "acme")

    assert result["insertedRecords"] == 1
    assert result["skippedRecords"] == 5
    # Backup never overwrites a mirrored row
    async with mirror_db.connect() as conn:
        name = (await conn.exec_driver_sql("SELECT name FROM backup_acme__widgets WHERE id = 1")).scalar()
    assert name == "bolt"


@pytest.mark.asyncio
async def test_full_row_identity_treats_nulls_as_equal(mirror_db):
    ensured = await ensure_mirror_table(
        mirror_db, "acme", "events", [ColumnInfo("kind", "text"), ColumnInfo("note", "text")]
    )
    rows = [{"kind": "open", "note": None}, {"kind": "close", "note": "x"}]

    async with mirror_db.connect() as conn:
        first = await reconcile_backup(conn, ensured["table"], rows)
        second = await reconcile_backup(conn, ensured["table"], rows)

    assert first == {"inserted": 2, "skipped": 0}
    assert second == {"inserted": 0, "skipped": 2}


@pytest.mark.asyncio
async def test_upload_restores_and_second_run_only_matches(mirror_db, make_source, query_source):
    url = make_source("acme", _WIDGETS)
    await backup_database(url, "acme")
    make_source("acme", "DELETE FROM widgets WHERE id IN (4, 5); UPDATE widgets SET name = 'changed' WHERE id = 1;")

    first = await upload_table(url, "acme", "widgets")
    second = await upload_table(url, "acme", "widgets")

    assert first == {"totalRecords": 5, "uploaded": 2, "matched": 3, "errors": []}
    assert second == {"totalRecords": 5, "uploaded": 0, "matched": 5, "errors": []}
    rows = query_source(url, "SELECT id, name FROM widgets ORDER BY id")
    assert rows == [(1, "bolt"), (2, "nut"), (3, "gear"), (4, "cog"), (5, "pin")]


@pytest.mark.asyncio
async def test_upload_drops_columns_the_remote_lacks(mirror_db, make_source, query_source):
    url = make_source("acme", _WIDGETS)
    await backup_database(url, "acme")
    remote = make_source("restore", "CREATE TABLE widgets (id INTEGER PRIMARY KEY, name TEXT);")

    result = await upload_table(remote, "acme", "widgets")

    assert result["uploaded"] == 5
    assert result["errors"] == []
    assert query_source(remote, "SELECT COUNT(*) FROM widgets") == [(5,)]


@pytest.mark.asyncio
async def test_upload_reports_rows_without_a_key(mirror_db, make_source):
    url = make_source("acme", _EVENTS)
    await backup_database(url, "acme")
    remote = make_source("restore", "CREATE TABLE events (kind TEXT, amount INTEGER, note TEXT);")

    result = await upload_table(remote, "acme", "events")

    # No primary key and no id column on the remote: every row is reported
    assert result["uploaded"] == 0
    assert len(result["errors"]) == 3
    assert result["errors"][0]["record"] == "unknown"


_ORDERS = """
CREATE TABLE orders (id INTEGER PRIMARY KEY, placed_at TIMESTAMP, due DATE, paid BOOLEAN);
INSERT INTO orders VALUES (1, '2025-03-01 09:30:00', '2025-03-05', 1), (2, '2025-03-02T14:00:00Z', '2025-03-09', 0);
CREATE TABLE shipments (carrier TEXT, sent_at TIMESTAMP);
INSERT INTO shipments VALUES ('dhl', '2025-03-03 08:00:00'), ('ups', NULL);
"""


@pytest.mark.asyncio
async def test_backup_keeps_rows_with_dates_stored_as_text(mirror_db, make_source):
    url = make_source("acme", _ORDERS)

    first = await backup_database(url, "acme")
    second = await backup_database(url, "acme")

    assert first["insertedRecords"] == 4
    assert first["errors"] == []
    assert second["insertedRecords"] == 0
    assert second["skippedRecords"] == 4

    async with mirror_db.connect() as conn:
        rows = (
            await conn.exec_driver_sql("SELECT placed_at, due, paid FROM backup_acme__orders ORDER BY id")
        ).all()
    assert rows[0][0].startswith("2025-03-01 09:30:00")
    assert rows[1][0].startswith("2025-03-02 14:00:00")
    assert [r[1] for r in rows] == ["2025-03-05", "2025-03-09"]
    assert [r[2] for r in rows] == [1, 0]


@pytest.mark.asyncio
async def test_upload_restores_rows_with_dates(mirror_db, make_source, query_source):
    url = make_source("acme", _ORDERS)
    await backup_database(url, "acme")
    remote = make_source(
        "restore", "CREATE TABLE orders (id INTEGER PRIMARY KEY, placed_at TIMESTAMP, due DATE, paid BOOLEAN);"
    )

    result = await upload_table(remote, "acme", "orders")

    assert result == {"totalRecords": 2, "uploaded": 2, "matched": 0, "errors": []}
    rows = query_source(remote, "SELECT id, due FROM orders ORDER BY id")
    assert rows == [(1, "2025-03-05"), (2, "2025-03-09")]
