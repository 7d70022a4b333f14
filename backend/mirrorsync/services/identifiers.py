import re

from mirrorsync.errors import SchemaError

# PostgreSQL silently truncates longer identifiers
MAX_IDENTIFIER_LENGTH = 63

MIRROR_PREFIX = "backup_"
INTERNAL_TABLES = frozenset({"backends", "job_statuses"})
BOOKKEEPING_COLUMNS = ("backup_created_at", "backup_updated_at")

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def sanitize_identifier(name: str) -> str:
    """Strip everything outside ``[A-Za-z0-9_]``; an empty result is an error."""
    cleaned = _UNSAFE.sub("", str(name))
    if not cleaned:
        raise SchemaError(f"Invalid identifier: {name!r}")
    return cleaned


def mirror_prefix(backend_name: str) -> str:
    return f"{MIRROR_PREFIX}{sanitize_identifier(backend_name).lower()}__"


def mirror_table_name(backend_name: str, table_name: str) -> str:
    name = mirror_prefix(backend_name) + sanitize_identifier(table_name)
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise SchemaError(
            f"Mirror table name {name!r} exceeds {MAX_IDENTIFIER_LENGTH} characters"
        )
    return name


def source_table_name(backend_name: str, mirror_name: str) -> str | None:
    """Inverse of :func:`mirror_table_name`; None when the table belongs elsewhere."""
    prefix = mirror_prefix(backend_name)
    if not mirror_name.startswith(prefix):
        return None
    return mirror_name[len(prefix):] or None


def base_table_name(name: str) -> str:
    while name.startswith(MIRROR_PREFIX):
        name = name[len(MIRROR_PREFIX):]
    return name


def is_internal_table(name: str) -> bool:
    return name in INTERNAL_TABLES or base_table_name(name) in INTERNAL_TABLES
