import os
import sqlite3
import tempfile

import pytest
import pytest_asyncio
from sqlalchemy import MetaData

# Set required env vars before any mirrorsync module is imported so
# pydantic-settings picks them up and the mirror engine points at SQLite.
_tmp_root = tempfile.mkdtemp(prefix="mirrorsync-tests-")
_test_env = {
    "DATABASE_URL": f"sqlite+aiosqlite:///{_tmp_root}/mirror.db",
    "BACKUP_FILES_PATH": os.path.join(_tmp_root, "files"),
    "AUTO_BACKUP_DATABASE_ENABLED": "false",
    "AUTO_BACKUP_FILES_ENABLED": "false",
    "CORS_ORIGINS": '["http://localhost:5173"]',
}

for key, value in _test_env.items():
    os.environ.setdefault(key, value)


def _drop_everything(sync_conn) -> None:
    metadata = MetaData()
    metadata.reflect(bind=sync_conn)
    metadata.drop_all(bind=sync_conn)


@pytest_asyncio.fixture
async def mirror_db():
    """Fresh mirror store: job and backend tables created, everything dropped afterwards."""
    from mirrorsync.database import engine, init_db

    await init_db()
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(_drop_everything)
    await engine.dispose()


@pytest.fixture
def make_source(tmp_path):
    """Create (or extend) a SQLite source database and return its connection string."""

    def _make(name: str, script: str = "") -> str:
        path = tmp_path / f"{name}.db"
        conn = sqlite3.connect(path)
        try:
            conn.executescript(script)
            conn.commit()
        finally:
            conn.close()
        return f"sqlite:///{path}"

    return _make


@pytest.fixture
def query_source():
    def _query(url: str, sql: str) -> list:
        conn = sqlite3.connect(url.removeprefix("sqlite:///"))
        try:
            return conn.execute(sql).fetchall()
        finally:
            conn.close()

    return _query
