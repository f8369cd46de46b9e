"""
Archive Store
=============
Durable key-value blob storage for run metadata, logs and artifacts.

Key shapes:
    meta/<id>.json       — mirror of the run record
    logs/<id>.log        — full run log (byte offsets match the local buffer)
    artifacts/<id>.tar.gz — packed workspace of a started run

Two backends share the ``ArchiveStore`` contract:
    LocalArchiveStore — files under ARCHIVE_DIR (default, tests)
    S3ArchiveStore    — an S3 bucket via boto3
"""
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

from launchpad.core.config import ARCHIVE_BACKEND, ARCHIVE_DIR, AWS_REGION, S3_BUCKET
from launchpad.core.constants import ARTIFACT_KEY, LOG_KEY, META_KEY
from launchpad.utils.naming import validate_run_id

logger = logging.getLogger(__name__)


def meta_key(run_id: str) -> str:
    return META_KEY.format(id=validate_run_id(run_id))


def log_key(run_id: str) -> str:
    return LOG_KEY.format(id=validate_run_id(run_id))


def artifact_key(run_id: str) -> str:
    return ARTIFACT_KEY.format(id=validate_run_id(run_id))


class ArchiveStore(ABC):
    """Put-whole-object / get-by-key blob store."""

    @abstractmethod
    def put(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> str:
        """Store ``body`` under ``key``; return a locator string."""

    @abstractmethod
    def get(self, key: str, start: Optional[int] = None) -> Optional[bytes]:
        """Return the object (from byte ``start`` when given), or None if absent."""

    def put_json(self, key: str, data: Any) -> str:
        return self.put(key, json.dumps(data, indent=2, default=str).encode("utf-8"), "application/json")

    def get_json(self, key: str) -> Optional[dict]:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            logger.warning("Archive object %s is not valid JSON", key)
            return None


class LocalArchiveStore(ArchiveStore):
    """Archive backed by a local directory tree."""

    def __init__(self, root: str = ARCHIVE_DIR) -> None:
        self.root = os.path.abspath(root)
        self._lock = threading.Lock()

    def _path(self, key: str) -> str:
        path = os.path.normpath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"archive key escapes archive root: {key!r}")
        return path

    def put(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp-{threading.get_ident()}"
        with self._lock:
            with open(tmp_path, "wb") as f:
                f.write(body)
            # Readers never observe a half-written object
            os.replace(tmp_path, path)
        return f"file://{path}"

    def get(self, key: str, start: Optional[int] = None) -> Optional[bytes]:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                if start:
                    f.seek(start)
                return f.read()
        except FileNotFoundError:
            return None


class S3ArchiveStore(ArchiveStore):
    """Archive backed by an S3 bucket."""

    def __init__(self, bucket_name: str = S3_BUCKET, region: str = AWS_REGION, client=None) -> None:
        self.bucket_name = bucket_name
        if client is None:
            client = boto3.client("s3", region_name=region)
        self.s3_client = client
        logger.info("S3ArchiveStore initialized with bucket: %s", bucket_name)

    def put(self, key: str, body: bytes, content_type: str = "application/octet-stream") -> str:
        self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=body, ContentType=content_type)
        return f"s3://{self.bucket_name}/{key}"

    def get(self, key: str, start: Optional[int] = None) -> Optional[bytes]:
        kwargs = {"Bucket": self.bucket_name, "Key": key}
        if start:
            kwargs["Range"] = f"bytes={start}-"
        try:
            response = self.s3_client.get_object(**kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404"):
                return None
            if code == "InvalidRange":
                # Reading exactly at the end of the object
                return b""
            raise
        return response["Body"].read()


def create_archive_store(backend: str = ARCHIVE_BACKEND) -> ArchiveStore:
    if backend == "s3":
        return S3ArchiveStore()
    if backend != "local":
        logger.warning("Unknown ARCHIVE_BACKEND %r, falling back to local", backend)
    return LocalArchiveStore()
