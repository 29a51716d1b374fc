"""
Object storage for rendered documents.

This module provides:
- Uploading rendered PDFs under a hashed prefix (spreads keys across partitions)
- Copying an artifact to its "signed" location
- Generating presigned, time-limited download URLs

``S3ObjectStore`` talks to S3 or any S3-compatible service through boto3.
``LocalObjectStore`` keeps objects on disk for development and tests.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ArtifactMissing, StorageError
from .utils import ensure_directory

logger = logging.getLogger(__name__)

MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class StoredObject:
    key: str
    prefix: str


class ObjectStore(Protocol):
    def put(self, content: bytes, filename: str) -> StoredObject:
        ...

    def copy(self, key: str) -> StoredObject:
        ...

    def signed_url(self, key: str, ttl: int = 3600) -> str:
        ...


def key_prefix(filename: str, prefixes: int) -> str:
    """Stable partition prefix: first 32 bits of sha256(filename) modulo ``prefixes``."""
    digest = hashlib.sha256(filename.encode("utf-8")).hexdigest()
    return str(int(digest[:8], 16) % prefixes)


def signed_key_for(key: str) -> StoredObject:
    """``3/report-abc.pdf`` -> ``3/signed-report-abc.pdf``"""
    prefix, _, filename = key.partition("/")
    if not filename:
        prefix, filename = "", key
    signed = f"signed-{filename}" if not filename.startswith("signed-") else filename
    return StoredObject(key=f"{prefix}/{signed}" if prefix else signed, prefix=prefix)


class S3ObjectStore:
    """
    S3-backed store.

    Args:
        bucket: Target bucket
        client: Pre-built boto3 S3 client (tests); built from the other
            arguments when omitted
        endpoint_url: Custom endpoint for S3-compatible services (MinIO, R2, ...)
        region: AWS region
        prefixes: Number of key prefixes to spread objects across
    """

    def __init__(
        self,
        bucket: str,
        client=None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        prefixes: int = 10,
    ):
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.prefixes = prefixes
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            region_name=region or None,
            config=Config(s3={"addressing_style": "path"}),
        )

    def put(self, content: bytes, filename: str) -> StoredObject:
        prefix = key_prefix(filename, self.prefixes)
        key = f"{prefix}/{filename}"
        logger.info(f"Uploading {len(content)} bytes to s3://{self.bucket}/{key}")
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=content, ContentType="application/pdf")
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 upload failed: {e}") from e
        return StoredObject(key=key, prefix=prefix)

    def copy(self, key: str) -> StoredObject:
        target = signed_key_for(key)
        logger.info(f"Copying s3://{self.bucket}/{key} to {target.key}")
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                CopySource={"Bucket": self.bucket, "Key": key},
                Key=target.key,
                ContentType="application/pdf",
                Metadata={"source-key": key},
                MetadataDirective="REPLACE",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in MISSING_OBJECT_CODES:
                raise ArtifactMissing(key) from e
            raise StorageError(f"S3 copy failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 copy failed: {e}") from e
        return target

    def signed_url(self, key: str, ttl: int = 3600) -> str:
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to generate presigned URL: {e}") from e
        logger.info(f"Generated presigned URL for {key} (expires in {ttl}s)")
        return url

    def ping(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 bucket not reachable: {e}") from e


class LocalObjectStore:
    """Filesystem store; URLs are ``file://`` URIs carrying an ``expires`` timestamp."""

    def __init__(self, root: Path, prefixes: int = 10):
        self.root = ensure_directory(Path(root).resolve())
        self.prefixes = prefixes

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not str(path).startswith(str(self.root)):
            raise StorageError(f"Invalid object key: {key}")
        return path

    def put(self, content: bytes, filename: str) -> StoredObject:
        prefix = key_prefix(filename, self.prefixes)
        key = f"{prefix}/{filename}"
        path = self._path(key)
        ensure_directory(path.parent)
        # Write then rename so a retried upload never leaves a truncated file
        tmp = path.with_suffix(path.suffix + ".part")
        tmp.write_bytes(content)
        tmp.replace(path)
        return StoredObject(key=key, prefix=prefix)

    def copy(self, key: str) -> StoredObject:
        source = self._path(key)
        if not source.is_file():
            raise ArtifactMissing(key)
        target = signed_key_for(key)
        destination = self._path(target.key)
        ensure_directory(destination.parent)
        shutil.copyfile(source, destination)
        return target

    def signed_url(self, key: str, ttl: int = 3600) -> str:
        path = self._path(key)
        if not path.is_file():
            raise ArtifactMissing(key)
        return f"{path.as_uri()}?expires={int(time.time()) + ttl}"

    def ping(self) -> None:
        if not self.root.is_dir():
            raise StorageError(f"Storage root {self.root} is missing")
