import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from mirrorsync.errors import ConfigurationError, SourceConnectionError

logger = logging.getLogger(__name__)

# Sync driver names as stored in backend settings -> async driver used here
_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "postgresql+psycopg2": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def normalize_url(url: str) -> str:
    """Turn a plain connection string into an async SQLAlchemy URL.

    ``postgres://`` and ``postgresql://`` become ``postgresql+asyncpg://`` and
    ``sqlite://`` becomes ``sqlite+aiosqlite://``. A ``sslmode`` query argument
    is dropped here; :func:`_connect_args` turns it into asyncpg's ``ssl``.
    """
    if "://" not in url:
        raise ConfigurationError(f"Invalid database URL: {url!r}")
    scheme, rest = url.split("://", 1)
    scheme = _ASYNC_DRIVERS.get(scheme.lower(), scheme)
    try:
        parsed = make_url(f"{scheme}://{rest}")
    except ArgumentError as exc:
        raise ConfigurationError(f"Invalid database URL: {exc}") from exc
    if "sslmode" in parsed.query:
        parsed = parsed.difference_update_query(["sslmode"])
    return parsed.render_as_string(hide_password=False)


def _connect_args(url: str) -> dict:
    try:
        parsed = make_url(url)
    except ArgumentError:
        return {}
    sslmode = parsed.query.get("sslmode")
    if sslmode and sslmode != "disable" and parsed.drivername.startswith("postgres"):
        return {"ssl": sslmode}
    return {}


def create_source_engine(connection_string: str) -> AsyncEngine:
    return create_async_engine(
        normalize_url(connection_string),
        echo=False,
        pool_pre_ping=True,
        connect_args=_connect_args(connection_string),
    )


@asynccontextmanager
async def source_connection(connection_string: str) -> AsyncIterator[AsyncConnection]:
    """Open one connection to a backend database and dispose the engine afterwards.

    Failing to connect raises :class:`SourceConnectionError`; errors raised by
    the caller's statements propagate unchanged.
    """
    engine = create_source_engine(connection_string)
    try:
        try:
            conn = await engine.connect()
        except (OSError, DBAPIError, asyncio.TimeoutError) as exc:
            host = make_url(normalize_url(connection_string)).host or "local"
            logger.error("Source database %s unreachable: %s", host, exc)
            raise SourceConnectionError(f"Could not connect to source database: {exc}") from exc
        try:
            yield conn
        finally:
            await conn.close()
    finally:
        await engine.dispose()
