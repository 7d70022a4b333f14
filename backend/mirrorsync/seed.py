import json
import logging
from pathlib import Path

from mirrorsync.config import settings
from mirrorsync.services.backends import register_backend

logger = logging.getLogger(__name__)


async def seed_backends(path: str | None = None) -> int:
    """Register the backends listed in a JSON file.

    The file holds a list of ``{"name", "dbUrl", "bucketUrl", "attributes"}``
    objects; entries are upserted by name so reseeding is safe.
    """
    path = path or settings.backends_file
    if not path:
        return 0
    source = Path(path)
    if not source.is_file():
        logger.warning("Backends file %s not found, nothing seeded", source)
        return 0

    entries = json.loads(source.read_text(encoding="utf-8"))
    for entry in entries:
        await register_backend(
            entry["name"],
            db_url=entry.get("dbUrl"),
            bucket_url=entry.get("bucketUrl"),
            attributes=entry.get("attributes") or {},
        )
    logger.info("Seeded %d backend(s) from %s", len(entries), source)
    return len(entries)
