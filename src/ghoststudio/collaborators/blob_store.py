#!/usr/bin/env python3
"""
blob_store.py – Blob Reference Store
====================================

Passes images between stages by reference instead of re-encoding them.

- Keys are session-scoped and content-addressed (sha256[:16]); writing the
  same bytes twice returns the same ref, changed bytes get a new key
- Written blobs are immutable: an existing key is never overwritten
- Backends: in-memory (tests, batch), local filesystem, S3 (optional boto3)

Refs look like ``blob://<session_id>/<name>-<hash16><ext>``.

Dependencies: boto3 (optional, S3 backend only)
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..config import StorageSettings
from ..errors import ErrorCode, GhostPipelineError
from ..utils.images import extension_for

# Optional cloud storage dependency
try:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError
    HAVE_S3 = True
except ImportError:
    HAVE_S3 = False
    boto3 = None

logger = logging.getLogger("ghoststudio.blob_store")

REF_SCHEME = "blob://"


def content_key(data: bytes, name: Optional[str] = None, mime_type: Optional[str] = None) -> str:
    digest = hashlib.sha256(data).hexdigest()[:16]
    ext = extension_for(mime_type) if mime_type else ".bin"
    prefix = f"{name}-" if name else ""
    return f"{prefix}{digest}{ext}"


def parse_ref(ref: str) -> Tuple[str, str]:
    """Split ``blob://session/key`` into (session_id, key)."""
    if not isinstance(ref, str) or not ref.startswith(REF_SCHEME):
        raise GhostPipelineError(f"Not a blob ref: {ref!r}", ErrorCode.STAGE_FAILED)
    rest = ref[len(REF_SCHEME):]
    session_id, sep, key = rest.partition("/")
    if not session_id or not sep or not key or "/" in key or ".." in key:
        raise GhostPipelineError(f"Malformed blob ref: {ref!r}", ErrorCode.STAGE_FAILED)
    return session_id, key


class BlobStore:
    """Base class for blob stores."""

    def put(
        self,
        data: bytes,
        session_id: str,
        name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> str:
        if not data:
            raise GhostPipelineError("Refusing to store an empty blob", ErrorCode.STAGE_FAILED)
        if not session_id or "/" in session_id or ".." in session_id:
            raise GhostPipelineError(f"Invalid session id for blob key: {session_id!r}", ErrorCode.STAGE_FAILED)
        key = content_key(data, name, mime_type)
        ref = f"{REF_SCHEME}{session_id}/{key}"
        if self._exists(session_id, key):
            logger.debug(f"♻️ Reusing existing blob {ref}")
            return ref
        self._write(session_id, key, data, mime_type)
        logger.info(f"📤 Stored blob {ref} ({len(data) / 1024:.1f} KB)")
        return ref

    def get(self, ref: str) -> bytes:
        session_id, key = parse_ref(ref)
        data = self._read(session_id, key)
        if data is None:
            raise GhostPipelineError(f"Blob not found: {ref}", ErrorCode.STAGE_FAILED)
        return data

    def mime_type(self, ref: str) -> str:
        _, key = parse_ref(ref)
        suffix = Path(key).suffix.lower()
        return {
            ".png": "image/png",
            ".jpg": "image/jpeg",
            ".webp": "image/webp",
            ".gif": "image/gif",
        }.get(suffix, "application/octet-stream")

    # backend hooks
    def _exists(self, session_id: str, key: str) -> bool:
        raise NotImplementedError

    def _write(self, session_id: str, key: str, data: bytes, mime_type: Optional[str]) -> None:
        raise NotImplementedError

    def _read(self, session_id: str, key: str) -> Optional[bytes]:
        raise NotImplementedError


class InMemoryBlobStore(BlobStore):
    def __init__(self):
        self._blobs: Dict[Tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    def _exists(self, session_id: str, key: str) -> bool:
        return (session_id, key) in self._blobs

    def _write(self, session_id: str, key: str, data: bytes, mime_type: Optional[str]) -> None:
        with self._lock:
            self._blobs.setdefault((session_id, key), bytes(data))

    def _read(self, session_id: str, key: str) -> Optional[bytes]:
        return self._blobs.get((session_id, key))

    def __len__(self) -> int:
        return len(self._blobs)


class LocalBlobStore(BlobStore):
    """Filesystem store: ``<root>/<session_id>/<key>``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, ref: str) -> Path:
        session_id, key = parse_ref(ref)
        return self.root / session_id / key

    def _exists(self, session_id: str, key: str) -> bool:
        return (self.root / session_id / key).exists()

    def _write(self, session_id: str, key: str, data: bytes, mime_type: Optional[str]) -> None:
        target = self.root / session_id / key
        target.parent.mkdir(parents=True, exist_ok=True)
        # exclusive create keeps written blobs immutable
        try:
            with open(target, "xb") as f:
                f.write(data)
        except FileExistsError:
            pass

    def _read(self, session_id: str, key: str) -> Optional[bytes]:
        path = self.root / session_id / key
        return path.read_bytes() if path.exists() else None


class S3BlobStore(BlobStore):
    """AWS S3 store: ``s3://<bucket>/<prefix><session_id>/<key>``."""

    def __init__(self, settings: StorageSettings, client=None):
        if client is None:
            if not HAVE_S3:
                raise GhostPipelineError(
                    "boto3 not installed; install ghoststudio[s3] for the S3 blob store",
                    ErrorCode.CLIENT_MISCONFIGURED,
                )
            client = boto3.client("s3", region_name=settings.region)
        if not settings.bucket:
            raise GhostPipelineError("storage.bucket is required for the S3 blob store", ErrorCode.CLIENT_MISCONFIGURED)
        self.settings = settings
        self.client = client

    def _key(self, session_id: str, key: str) -> str:
        return f"{self.settings.prefix.rstrip('/')}/{session_id}/{key}".lstrip("/")

    def _exists(self, session_id: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.settings.bucket, Key=self._key(session_id, key))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise GhostPipelineError(f"S3 lookup failed: {e}", ErrorCode.STAGE_FAILED, cause=e) from e

    def _write(self, session_id: str, key: str, data: bytes, mime_type: Optional[str]) -> None:
        try:
            self.client.put_object(
                Bucket=self.settings.bucket,
                Key=self._key(session_id, key),
                Body=data,
                ContentType=mime_type or "application/octet-stream",
                CacheControl="public, max-age=31536000, immutable",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise GhostPipelineError(f"S3 upload failed: {e}", ErrorCode.STAGE_FAILED, cause=e) from e

    def _read(self, session_id: str, key: str) -> Optional[bytes]:
        try:
            obj = self.client.get_object(Bucket=self.settings.bucket, Key=self._key(session_id, key))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return None
            raise GhostPipelineError(f"S3 download failed: {e}", ErrorCode.STAGE_FAILED, cause=e) from e
        return obj["Body"].read()


def create_blob_store(settings: StorageSettings) -> BlobStore:
    """Factory for the configured backend."""
    if settings.backend == "memory":
        return InMemoryBlobStore()
    if settings.backend == "local":
        return LocalBlobStore(Path(settings.root))
    if settings.backend == "s3":
        return S3BlobStore(settings)
    raise GhostPipelineError(f"Unsupported storage backend: {settings.backend}", ErrorCode.CLIENT_MISCONFIGURED)
