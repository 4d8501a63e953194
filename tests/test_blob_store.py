"""Tests for content-addressed blob storage.

Covers hashing, dedup across messages, the inline fallback when the
primary backend is down, and lookups of unknown hashes.
"""

import asyncio
import hashlib
from pathlib import Path

import pytest

from mailflow.core.errors import BlobBackendError, BlobNotFoundError
from mailflow.db.store import Attachment, DatabaseStore, Message
from mailflow.storage.blob_store import ContentAddressedStore, FilesystemBackend, content_hash

PDF_BYTES = b"%PDF-1.7 factura 4711 total 500.00 USD"


class DownBackend:
    """Backend that is unreachable for every call."""

    def __init__(self):
        self.put_calls = 0

    def put_object(self, key: str, data: bytes) -> None:
        self.put_calls += 1
        raise BlobBackendError("connection refused")

    def head_object(self, key: str) -> bool:
        raise BlobBackendError("connection refused")

    def get_object(self, key: str) -> bytes:
        raise BlobBackendError("connection refused")


class TestContentHash:
    def test_is_sha256_hex(self):
        assert content_hash(PDF_BYTES) == hashlib.sha256(PDF_BYTES).hexdigest()
        assert len(content_hash(b"")) == 64


class TestFilesystemBackend:
    def test_put_get_head(self, tmp_path: Path):
        backend = FilesystemBackend(tmp_path)
        backend.put_object("blobs/ab/abc", b"data")
        assert backend.head_object("blobs/ab/abc") is True
        assert backend.get_object("blobs/ab/abc") == b"data"
        assert not list((tmp_path / "blobs" / "ab").glob(".tmp-*"))

    def test_missing_key(self, tmp_path: Path):
        backend = FilesystemBackend(tmp_path)
        assert backend.head_object("blobs/zz/missing") is False
        with pytest.raises(KeyError):
            backend.get_object("blobs/zz/missing")

    def test_rejects_escaping_key(self, tmp_path: Path):
        backend = FilesystemBackend(tmp_path / "root")
        with pytest.raises(BlobBackendError):
            backend.put_object("../outside", b"x")


class TestPut:
    async def test_first_put_stores(self, blobs: ContentAddressedStore, store: DatabaseStore):
        result = await blobs.put(PDF_BYTES)

        assert result.stored is True
        assert result.backend == "primary"
        assert result.size == len(PDF_BYTES)
        assert result.content_hash == content_hash(PDF_BYTES)
        record = await store.get_blob(result.content_hash)
        assert record is not None
        assert record.storage_key == blobs.key_for(result.content_hash)

    async def test_key_layout(self, blobs: ContentAddressedStore):
        digest = content_hash(PDF_BYTES)
        assert blobs.key_for(digest) == f"blobs/{digest[:2]}/{digest}"

    async def test_second_put_is_dedup_hit(self, blobs: ContentAddressedStore, store: DatabaseStore):
        first = await blobs.put(PDF_BYTES)
        second = await blobs.put(PDF_BYTES)

        assert first.content_hash == second.content_hash
        assert second.stored is False
        assert blobs.writes == 1
        assert blobs.dedup_hits == 1
        assert await store.count_blobs() == 1

    async def test_backend_hit_without_row_records_presence(
        self, store: DatabaseStore, data_dir: Path
    ):
        backend = FilesystemBackend(data_dir / "blobs")
        blobs = ContentAddressedStore(backend, store)
        digest = content_hash(PDF_BYTES)
        backend.put_object(blobs.key_for(digest), PDF_BYTES)

        result = await blobs.put(PDF_BYTES)

        # Presence row created by this put; the bytes are not rewritten
        assert result.stored is True
        assert (await store.get_blob(digest)).backend == "primary"
        assert await store.count_blobs() == 1

    async def test_shared_attachment_stored_once(
        self, blobs: ContentAddressedStore, store: DatabaseStore, account_id: int
    ):
        """The same PDF on two messages is one blob referenced twice."""
        hashes = []
        message_ids = []
        for provider_id in ("msg-a", "msg-b"):
            message_id = await store.insert_message(
                Message(account_id=account_id, provider_message_id=provider_id, subject="Factura")
            )
            message_ids.append(message_id)
            result = await blobs.put(PDF_BYTES)
            hashes.append(result.content_hash)
            await store.add_attachment(
                Attachment(
                    message_id=message_id,
                    filename="factura.pdf",
                    mime_type="application/pdf",
                    size=len(PDF_BYTES),
                    content_hash=result.content_hash,
                )
            )

        assert hashes[0] == hashes[1]
        assert await store.count_blobs() == 1
        for message_id in message_ids:
            [attachment] = await store.get_attachments(message_id)
            assert attachment.content_hash == hashes[0]

    async def test_concurrent_puts_store_once(
        self, blobs: ContentAddressedStore, store: DatabaseStore
    ):
        results = await asyncio.gather(*(blobs.put(PDF_BYTES) for _ in range(5)))

        assert len({r.content_hash for r in results}) == 1
        assert sum(r.stored for r in results) == 1
        assert await store.count_blobs() == 1
        assert blobs.writes == 1
        assert await blobs.get(results[0].content_hash) == PDF_BYTES


class TestInlineFallback:
    async def test_put_falls_back_inline(self, store: DatabaseStore):
        backend = DownBackend()
        blobs = ContentAddressedStore(backend, store)

        result = await blobs.put(PDF_BYTES)

        assert result.stored is True
        assert result.backend == "inline"
        assert blobs.inline_fallbacks == 1
        record = await store.get_blob(result.content_hash)
        assert record.backend == "inline"
        assert record.data == PDF_BYTES

    async def test_inline_blob_readable_while_backend_down(self, store: DatabaseStore):
        blobs = ContentAddressedStore(DownBackend(), store)
        result = await blobs.put(PDF_BYTES)
        assert await blobs.get(result.content_hash) == PDF_BYTES

    async def test_inline_dedup(self, store: DatabaseStore):
        backend = DownBackend()
        blobs = ContentAddressedStore(backend, store)
        await blobs.put(PDF_BYTES)
        second = await blobs.put(PDF_BYTES)

        assert second.stored is False
        assert second.backend == "inline"
        assert backend.put_calls == 1


class TestGet:
    async def test_roundtrip_primary(self, blobs: ContentAddressedStore):
        result = await blobs.put(PDF_BYTES)
        assert await blobs.get(result.content_hash) == PDF_BYTES

    async def test_unknown_hash(self, blobs: ContentAddressedStore):
        with pytest.raises(BlobNotFoundError) as exc_info:
            await blobs.get("0" * 64)
        assert exc_info.value.content_hash == "0" * 64

    async def test_primary_blob_with_backend_down(self, store: DatabaseStore, data_dir: Path):
        healthy = ContentAddressedStore(FilesystemBackend(data_dir / "blobs"), store)
        result = await healthy.put(PDF_BYTES)

        broken = ContentAddressedStore(DownBackend(), store)
        with pytest.raises(BlobBackendError):
            await broken.get(result.content_hash)

    async def test_exists(self, blobs: ContentAddressedStore):
        result = await blobs.put(PDF_BYTES)
        assert await blobs.exists(result.content_hash) is True
        assert await blobs.exists("f" * 64) is False
