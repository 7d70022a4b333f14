import logging
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config

from mirrorsync.config import settings

logger = logging.getLogger(__name__)

_CREDENTIAL_KEYS = ("S3_REGION", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY")


def has_s3_credentials(attributes: Optional[dict]) -> bool:
    attributes = attributes or {}
    return all(attributes.get(k) for k in _CREDENTIAL_KEYS)


class S3ObjectStore:
    """Path-style S3 access to the bucket named by the URL path.

    ``https://s3.example.com/my-bucket`` talks to endpoint
    ``https://s3.example.com`` and bucket ``my-bucket``. Every method blocks;
    callers run them through ``asyncio.to_thread``.
    """

    def __init__(self, bucket_url: str, attributes: dict) -> None:
        parsed = urlparse(bucket_url)
        self.bucket = parsed.path.strip("/")
        self.client = boto3.client(
            "s3",
            endpoint_url=f"{parsed.scheme}://{parsed.netloc}",
            region_name=attributes["S3_REGION"],
            aws_access_key_id=attributes["AWS_ACCESS_KEY_ID"],
            aws_secret_access_key=attributes["AWS_SECRET_ACCESS_KEY"],
            config=Config(
                s3={"addressing_style": "path"},
                connect_timeout=settings.http_timeout_seconds,
                read_timeout=60,
                retries={"max_attempts": 3},
            ),
        )

    def list_files(self) -> List[dict]:
        files = []
        kwargs = {"Bucket": self.bucket}
        while True:
            response = self.client.list_objects_v2(**kwargs)
            for obj in response.get("Contents", []):
                key = obj["Key"]
                if key.endswith("/"):
                    continue
                modified = obj.get("LastModified")
                files.append({
                    "key": key,
                    "name": key.split("/")[-1],
                    "size": obj.get("Size", 0),
                    "lastModified": modified.isoformat() if modified else None,
                })
            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not token:
                break
            kwargs["ContinuationToken"] = token
        logger.info("Listed %d object(s) in bucket %s", len(files), self.bucket)
        return files

    def download(self, key: str, destination: Path) -> None:
        self.client.download_file(self.bucket, key, str(destination))

    def upload(self, source: Path, key: str) -> None:
        self.client.upload_file(str(source), self.bucket, key)


def build_object_store(bucket_url: str, attributes: Optional[dict]) -> Optional[S3ObjectStore]:
    """An S3 store when credentials are present and the URL is http(s), else None."""
    if not has_s3_credentials(attributes) or urlparse(bucket_url).scheme not in ("http", "https"):
        return None
    return S3ObjectStore(bucket_url, attributes)
