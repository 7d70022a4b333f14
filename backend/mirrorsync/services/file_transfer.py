import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

import httpx
from botocore.exceptions import BotoCoreError, ClientError

from mirrorsync.config import settings
from mirrorsync.errors import ConfigurationError, SourceConnectionError, TransferError
from mirrorsync.services.object_store import build_object_store

logger = logging.getLogger(__name__)

_S3_ERRORS = (BotoCoreError, ClientError)


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=settings.http_timeout_seconds,
        headers={"User-Agent": "mirrorsync/1.0"},
        follow_redirects=True,
    )


def _require_http(bucket_url: str) -> None:
    if urlparse(bucket_url or "").scheme not in ("http", "https"):
        raise ConfigurationError(f"Bucket URL must be http(s): {bucket_url!r}")


def _descriptor(entry) -> Optional[dict]:
    """Normalise one item of an HTTP listing; None for anything unusable."""
    if isinstance(entry, str):
        entry = {"key": entry}
    if not isinstance(entry, dict):
        return None
    key = entry.get("key") or entry.get("Key") or entry.get("name")
    if not key or str(key).endswith("/"):
        return None
    key = str(key).lstrip("/")
    size = entry.get("size", entry.get("Size", 0))
    return {
        "key": key,
        "name": key.split("/")[-1],
        "size": int(size) if isinstance(size, (int, float)) else 0,
        "lastModified": entry.get("lastModified") or entry.get("LastModified"),
    }


# ---------------------------------------------------------------------------
# Trees
# ---------------------------------------------------------------------------

def organize_tree(files: List[dict]) -> dict:
    """Arrange flat descriptors into ``{files, folders: {name: {path, files, folders}}}``."""
    root: dict = {"files": [], "folders": {}}
    for f in files:
        node = root
        parts = [p for p in f["key"].split("/") if p]
        for depth, part in enumerate(parts[:-1]):
            node = node["folders"].setdefault(
                part, {"path": "/".join(parts[:depth + 1]), "files": [], "folders": {}}
            )
        node["files"].append(f)
    return root


def flatten_tree(tree: dict, prefix: str = "") -> Dict[str, dict]:
    result = {}
    for f in tree.get("files", []):
        key = f"{prefix}/{f['name']}" if prefix else f["name"]
        result[key] = f
    for name, folder in tree.get("folders", {}).items():
        result.update(flatten_tree(folder, f"{prefix}/{name}" if prefix else name))
    return result


def _iter_tree_files(tree: dict):
    yield from tree.get("files", [])
    for folder in tree.get("folders", {}).values():
        yield from _iter_tree_files(folder)


# ---------------------------------------------------------------------------
# Remote listing
# ---------------------------------------------------------------------------

async def _list_over_http(bucket_url: str) -> List[dict]:
    try:
        async with _http_client() as client:
            resp = await client.get(bucket_url)
    except httpx.HTTPError as exc:
        raise SourceConnectionError(f"Failed to fetch file listing: {exc}") from exc

    if resp.status_code != 200:
        logger.warning("File listing %s returned HTTP %d", bucket_url, resp.status_code)
        return []
    try:
        payload = resp.json()
    except ValueError:
        return []
    if not isinstance(payload, list):
        return []
    return [d for d in (_descriptor(e) for e in payload) if d is not None]


async def list_remote_file_entries(bucket_url: str, attributes: Optional[dict]) -> List[dict]:
    _require_http(bucket_url)
    store = build_object_store(bucket_url, attributes)
    if store is not None:
        try:
            return await asyncio.to_thread(store.list_files)
        except _S3_ERRORS as exc:
            logger.warning("S3 listing of %s failed, falling back to HTTP: %s", bucket_url, exc)
    return await _list_over_http(bucket_url)


async def list_remote_files(bucket_url: str, attributes: Optional[dict]) -> dict:
    return organize_tree(await list_remote_file_entries(bucket_url, attributes))


# ---------------------------------------------------------------------------
# Local listing
# ---------------------------------------------------------------------------

def _scan_local(root: Path) -> List[dict]:
    files = []
    if not root.is_dir():
        return files
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = Path(dirpath) / filename
            stat = path.stat()
            key = path.relative_to(root).as_posix()
            files.append({
                "key": key,
                "name": filename,
                "size": stat.st_size,
                "lastModified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
            })
    files.sort(key=lambda f: f["key"])
    return files


def _add_totals(node: dict) -> tuple[int, int]:
    count = len(node["files"])
    size = sum(f["size"] for f in node["files"])
    for folder in node["folders"].values():
        sub_count, sub_size = _add_totals(folder)
        count += sub_count
        size += sub_size
    node["totalFiles"] = count
    node["totalSize"] = size
    return count, size


async def list_local_files(local_root: str) -> dict:
    """Local mirror tree; every folder carries ``totalFiles`` and ``totalSize``."""
    tree = organize_tree(await asyncio.to_thread(_scan_local, Path(local_root)))
    _add_totals(tree)
    return tree


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

def _local_path(root: Path, key: str) -> Path:
    target = (root / key).resolve()
    if not target.is_relative_to(root.resolve()):
        raise TransferError(f"Refusing to write outside the backup folder: {key}")
    return target


async def _download_over_http(client: httpx.AsyncClient, url: str, destination: Path) -> None:
    try:
        resp = await client.get(url)
    except httpx.HTTPError as exc:
        raise TransferError(str(exc)) from exc
    if resp.status_code != 200:
        raise TransferError(f"HTTP {resp.status_code}")
    await asyncio.to_thread(destination.write_bytes, resp.content)


async def backup_files(bucket_url: str, attributes: Optional[dict], local_root: str) -> dict:
    """Download every bucket file that is not yet present locally."""
    tree = await list_remote_files(bucket_url, attributes)
    store = build_object_store(bucket_url, attributes)
    root = Path(local_root)
    root.mkdir(parents=True, exist_ok=True)

    total = downloaded = skipped = 0
    errors: list[str] = []

    async with _http_client() as client:
        for f in _iter_tree_files(tree):
            total += 1
            key = f["key"]
            try:
                destination = _local_path(root, key)
                if destination.exists():
                    skipped += 1
                    continue
                destination.parent.mkdir(parents=True, exist_ok=True)
                if store is not None:
                    try:
                        await asyncio.to_thread(store.download, key, destination)
                    except _S3_ERRORS as exc:
                        raise TransferError(str(exc)) from exc
                else:
                    await _download_over_http(client, f"{bucket_url.rstrip('/')}/{key}", destination)
                downloaded += 1
            except (TransferError, OSError) as exc:
                logger.warning("Failed to download %s: %s", key, exc)
                errors.append(f"Failed to download {key}: {exc}")

    logger.info("Files backup of %s: %d downloaded, %d skipped, %d errors", bucket_url, downloaded, skipped, len(errors))
    return {"totalFiles": total, "downloadedFiles": downloaded, "skippedFiles": skipped, "errors": errors}


async def upload_files(local_root: str, bucket_url: str, attributes: Optional[dict]) -> dict:
    """Put every local file into the bucket; nothing is compared first."""
    _require_http(bucket_url)
    store = build_object_store(bucket_url, attributes)
    if store is None:
        raise ConfigurationError("S3 credentials are required to upload files")

    root = Path(local_root)
    files = await asyncio.to_thread(_scan_local, root)
    uploaded = 0
    errors: list[str] = []
    for f in files:
        try:
            await asyncio.to_thread(store.upload, root / f["key"], f["key"])
            uploaded += 1
        except (*_S3_ERRORS, OSError) as exc:
            logger.warning("Failed to upload %s: %s", f["key"], exc)
            errors.append(f"Failed to upload {f['key']}: {exc}")

    logger.info("Files upload to %s: %d of %d uploaded", bucket_url, uploaded, len(files))
    return {"totalFiles": len(files), "uploadedFiles": uploaded, "matchedFiles": 0, "errors": errors}


async def compare_files(bucket_url: str, attributes: Optional[dict], local_root: str) -> dict:
    """Partition every key into missing-locally, missing-in-bucket, matching or different.

    Files are equal when their sizes are equal.
    """
    bucket = flatten_tree(await list_remote_files(bucket_url, attributes))
    local = flatten_tree(await list_local_files(local_root))

    missing_in_local, matching, different = [], [], []
    for key, remote in bucket.items():
        here = local.get(key)
        if here is None:
            missing_in_local.append({"key": key, "name": remote["name"], "size": remote["size"], "lastModified": remote["lastModified"]})
        elif here["size"] == remote["size"]:
            matching.append({"key": key, "name": remote["name"], "size": remote["size"]})
        else:
            different.append({
                "key": key,
                "name": remote["name"],
                "bucketSize": remote["size"],
                "localSize": here["size"],
                "bucketLastModified": remote["lastModified"],
                "localLastModified": here["lastModified"],
            })
    missing_in_bucket = [
        {"key": key, "name": f["name"], "size": f["size"], "lastModified": f["lastModified"]}
        for key, f in local.items()
        if key not in bucket
    ]

    return {
        "summary": {
            "totalBucketFiles": len(bucket),
            "totalLocalFiles": len(local),
            "missingInLocal": len(missing_in_local),
            "missingInBucket": len(missing_in_bucket),
            "matchingFiles": len(matching),
            "differentFiles": len(different),
        },
        "missingInLocal": missing_in_local,
        "missingInBucket": missing_in_bucket,
        "matchingFiles": matching,
        "differentFiles": different,
    }
