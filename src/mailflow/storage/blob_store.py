"""Content-addressed blob storage for message bodies and attachments.

Every blob is keyed by the sha256 of its bytes, so identical content arriving
in different messages (or different accounts) is written once and reused.

Layout in the primary backend:
    <prefix>/<hash[:2]>/<hash>

Presence is recorded in the `blobs` table. When the primary backend is
unreachable the bytes are kept inline in that table instead and the write
still succeeds.

Usage:
    from mailflow.storage.blob_store import ContentAddressedStore, FilesystemBackend

    blob_store = ContentAddressedStore(FilesystemBackend("data/blobs"), store)
    result = await blob_store.put(pdf_bytes)
    data = await blob_store.get(result.content_hash)
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from mailflow.core.errors import BlobBackendError, BlobNotFoundError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.db.store import DatabaseStore

logger = get_logger(__name__)


def content_hash(data: bytes) -> str:
    """sha256 hex digest used as the blob identity."""
    return hashlib.sha256(data).hexdigest()


class BlobBackend(Protocol):
    """Object storage contract.

    Implementations raise BlobBackendError when unreachable and KeyError from
    get_object when the key is absent.
    """

    def put_object(self, key: str, data: bytes) -> None: ...

    def head_object(self, key: str) -> bool: ...

    def get_object(self, key: str) -> bytes: ...


class FilesystemBackend:
    """Local filesystem backend.

    Writes go to a temporary file in the target directory and are renamed
    into place, so readers never observe a partial blob and two writers of
    the same key both end with identical content.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise BlobBackendError(f"Blob key escapes storage root: {key}")
        return path

    def put_object(self, key: str, data: bytes) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise BlobBackendError(
                f"Failed to write blob {key} under {self.root}: {e}. "
                "Check that the storage root exists and is writable."
            ) from e

    def head_object(self, key: str) -> bool:
        try:
            return self._path(key).is_file()
        except OSError as e:
            raise BlobBackendError(f"Failed to stat blob {key}: {e}") from e

    def get_object(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            raise KeyError(key) from None
        except OSError as e:
            raise BlobBackendError(f"Failed to read blob {key}: {e}") from e


@dataclass(frozen=True, slots=True)
class PutResult:
    """Outcome of a put: stored is True only for the put that recorded the hash."""

    content_hash: str
    stored: bool
    size: int
    backend: str


class ContentAddressedStore:
    """Dedup-aware blob store over a BlobBackend plus the `blobs` table.

    Attributes:
        backend: Primary object storage
        store: DatabaseStore holding presence rows (and inline fallbacks)
        key_prefix: Prefix for backend keys
        writes: Blobs written by this instance (primary or inline)
        dedup_hits: Puts that found the hash already present
        inline_fallbacks: Puts that fell back to inline storage
    """

    def __init__(self, backend: BlobBackend, store: DatabaseStore, key_prefix: str = "blobs"):
        self.backend = backend
        self.store = store
        self.key_prefix = key_prefix.strip("/")
        self.writes = 0
        self.dedup_hits = 0
        self.inline_fallbacks = 0

    def key_for(self, digest: str) -> str:
        return f"{self.key_prefix}/{digest[:2]}/{digest}"

    async def exists(self, digest: str) -> bool:
        """True if the hash has a presence row or is already in the backend."""
        if await self.store.get_blob(digest) is not None:
            return True
        try:
            return await asyncio.to_thread(self.backend.head_object, self.key_for(digest))
        except BlobBackendError:
            return False

    async def put(self, data: bytes) -> PutResult:
        """Store bytes under their sha256, skipping the write if already present."""
        digest = content_hash(data)
        size = len(data)
        key = self.key_for(digest)

        record = await self.store.get_blob(digest)
        if record is not None:
            self.dedup_hits += 1
            logger.debug("blob_dedup_hit", content_hash=digest[:12], backend=record.backend)
            return PutResult(content_hash=digest, stored=False, size=size, backend=record.backend)

        try:
            if not await asyncio.to_thread(self.backend.head_object, key):
                await asyncio.to_thread(self.backend.put_object, key, data)
            # Otherwise the bytes landed without a row (crash or concurrent
            # writer) and only presence is recorded
        except BlobBackendError as e:
            logger.warning(
                "blob_inline_fallback",
                content_hash=digest[:12],
                size=size,
                error=str(e),
            )
            created = await self.store.record_blob(digest, size, "inline", data=data)
            if created:
                self.writes += 1
                self.inline_fallbacks += 1
            else:
                self.dedup_hits += 1
            return PutResult(content_hash=digest, stored=created, size=size, backend="inline")

        created = await self.store.record_blob(digest, size, "primary", storage_key=key)
        if created:
            self.writes += 1
        else:
            self.dedup_hits += 1
        logger.debug("blob_stored", content_hash=digest[:12], size=size, created=created)
        return PutResult(content_hash=digest, stored=created, size=size, backend="primary")

    async def get(self, digest: str) -> bytes:
        """Return the bytes for a hash.

        Raises:
            BlobNotFoundError: If the hash is unknown to both the table and the backend
            BlobBackendError: If the primary backend holds the blob but is unreachable
        """
        record = await self.store.get_blob(digest)
        if record is not None and record.backend == "inline":
            if record.data is None:
                raise BlobNotFoundError(digest)
            return record.data

        key = record.storage_key if record and record.storage_key else self.key_for(digest)
        try:
            return await asyncio.to_thread(self.backend.get_object, key)
        except KeyError:
            raise BlobNotFoundError(digest) from None
