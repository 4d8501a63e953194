"""Content-addressed blob storage for message bodies and attachments."""

from mailflow.storage.blob_store import (
    BlobBackend,
    ContentAddressedStore,
    FilesystemBackend,
    PutResult,
    content_hash,
)

__all__ = [
    "BlobBackend",
    "ContentAddressedStore",
    "FilesystemBackend",
    "PutResult",
    "content_hash",
]
