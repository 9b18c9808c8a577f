"""
Unit tests for size-tiered blob storage.

Tests cover:
- Tier selection at the inline threshold boundary
- Chunked storage and segment-wise download
- Listing across tiers
- Duplicate, missing and deleted files
- Project isolation
"""

import os
import random

import pytest

from canvas.sketchlab_server.errors import (
    DuplicateBlobError,
    InvalidIdentifierError,
    NotFoundError,
)
from canvas.sketchlab_server.store.blobs import (
    MAX_INLINE_BLOB_SIZE,
    BlobStore,
    ChunkedBlobTier,
    InlineBlobTier,
    StorageTier,
)


class TestTierSelection:
    """Tier boundary at the real threshold."""

    @pytest.fixture
    def store(self, data_dir):
        return BlobStore.open(data_dir)

    @pytest.mark.parametrize(
        "size,tier",
        [
            (0, StorageTier.INLINE),
            (MAX_INLINE_BLOB_SIZE - 1, StorageTier.INLINE),
            (MAX_INLINE_BLOB_SIZE, StorageTier.INLINE),
            (MAX_INLINE_BLOB_SIZE + 1, StorageTier.CHUNKED),
        ],
    )
    def test_select_tier(self, store, size, tier):
        """Payloads above the threshold are chunked, the rest inline."""
        assert store.select_tier(size).tier == tier

    @pytest.mark.asyncio
    async def test_empty_payload(self, store):
        """An empty payload is a valid inline upload."""
        record = await store.upload("empty.pdf", b"", "demo")

        assert record.tier == StorageTier.INLINE
        assert record.size == 0
        assert await (await store.download("empty.pdf", "demo")).read() == b""

    @pytest.mark.asyncio
    async def test_threshold_exactly_is_inline(self, store):
        """A payload of exactly the threshold stays inline."""
        payload = b"\x01" * MAX_INLINE_BLOB_SIZE
        record = await store.upload("edge.pdf", payload, "demo")

        assert record.tier == StorageTier.INLINE
        assert await (await store.download("edge.pdf", "demo")).read() == payload

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "size,tier",
        [
            (MAX_INLINE_BLOB_SIZE - 1, StorageTier.INLINE),
            (MAX_INLINE_BLOB_SIZE + 1, StorageTier.CHUNKED),
        ],
    )
    async def test_round_trip_beside_threshold(self, store, size, tier):
        """One byte either side of the threshold downloads byte-identical."""
        payload = os.urandom(size)

        record = await store.upload("near.pdf", payload, "demo")

        assert record.tier == tier
        assert record.size == size
        stat = await store.stat("near.pdf", "demo")
        assert stat.tier == tier
        assert await (await store.download("near.pdf", "demo")).read() == payload

    @pytest.mark.asyncio
    async def test_large_pdf_is_chunked(self, store):
        """A 20 MiB file is chunked and read back byte-identical."""
        payload = os.urandom(20 * 1024 * 1024)

        record = await store.upload("doc1.pdf", payload, "demo")

        assert record.tier == StorageTier.CHUNKED
        assert record.chunk_count == -(-len(payload) // store.chunked.chunk_size)
        assert await store.list("demo") == {"doc1.pdf"}

        stream = await store.download("doc1.pdf", "demo")
        chunks = [chunk async for chunk in stream]
        assert len(chunks) == record.chunk_count
        assert all(len(c) <= store.chunked.chunk_size for c in chunks)
        assert b"".join(chunks) == payload


class TestBlobStore:
    """Behavior with a small threshold so both tiers are cheap to exercise."""

    THRESHOLD = 1024
    CHUNK = 100

    @pytest.fixture
    def store(self, data_dir):
        return BlobStore(
            inline=InlineBlobTier(data_dir),
            chunked=ChunkedBlobTier(data_dir, chunk_size=self.CHUNK),
            threshold=self.THRESHOLD,
        )

    @pytest.mark.asyncio
    async def test_mixed_uploads(self, store):
        """Every uploaded id is listed once and reads back intact."""
        rng = random.Random(7)
        payloads = {}
        for i in range(12):
            size = rng.choice([0, 1, self.THRESHOLD, self.THRESHOLD + 1, 3 * self.THRESHOLD])
            payloads[f"file-{i}.pdf"] = bytes(rng.getrandbits(8) for _ in range(size))
            await store.upload(f"file-{i}.pdf", payloads[f"file-{i}.pdf"], "demo")

        assert await store.list("demo") == set(payloads)
        for file_id, payload in payloads.items():
            stream = await store.download(file_id, "demo")
            assert await stream.read() == payload
            expected = StorageTier.CHUNKED if len(payload) > self.THRESHOLD else StorageTier.INLINE
            assert stream.record.tier == expected

    @pytest.mark.asyncio
    async def test_chunk_boundaries(self, store):
        """Payloads that are an exact multiple of the chunk size."""
        payload = bytes(range(200)) * 10  # 2000 bytes, 20 chunks
        record = await store.upload("exact.pdf", payload, "demo")

        assert record.chunk_count == 20
        assert await (await store.download("exact.pdf", "demo")).read() == payload

    @pytest.mark.asyncio
    async def test_duplicate_upload(self, store):
        """A file id can only be stored once."""
        await store.upload("a.pdf", b"small", "demo")

        with pytest.raises(DuplicateBlobError):
            await store.upload("a.pdf", b"x" * (self.THRESHOLD + 1), "demo")

        assert await (await store.download("a.pdf", "demo")).read() == b"small"

    @pytest.mark.asyncio
    async def test_download_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.download("missing.pdf", "demo")

    @pytest.mark.asyncio
    async def test_stat(self, store):
        await store.upload("big.pdf", b"b" * 2500, "demo")

        record = await store.stat("big.pdf", "demo")
        assert record.size == 2500
        assert record.tier == StorageTier.CHUNKED
        assert record.chunk_count == 25
        assert await store.stat("missing.pdf", "demo") is None

    @pytest.mark.asyncio
    async def test_delete_both_tiers(self, store):
        """Delete removes a file from whichever tier holds it."""
        await store.upload("small.pdf", b"s", "demo")
        await store.upload("big.pdf", b"b" * 5000, "demo")

        assert (await store.delete("small.pdf", "demo")).tier == StorageTier.INLINE
        assert (await store.delete("big.pdf", "demo")).tier == StorageTier.CHUNKED

        assert await store.list("demo") == set()
        with pytest.raises(NotFoundError):
            await store.delete("big.pdf", "demo")

    @pytest.mark.asyncio
    async def test_reupload_after_delete(self, store):
        await store.upload("a.pdf", b"one", "demo")
        await store.delete("a.pdf", "demo")

        await store.upload("a.pdf", b"two", "demo")

        assert await (await store.download("a.pdf", "demo")).read() == b"two"

    @pytest.mark.asyncio
    async def test_projects_are_isolated(self, store):
        await store.upload("a.pdf", b"alpha", "alpha")

        assert await store.list("beta") == set()
        with pytest.raises(NotFoundError):
            await store.download("a.pdf", "beta")

    @pytest.mark.asyncio
    async def test_list_creates_no_database(self, store, data_dir):
        """Reading an unknown project leaves no files behind."""
        assert await store.list("ghost") == set()
        assert await store.stat("a.pdf", "ghost") is None
        assert os.listdir(data_dir) == []

    @pytest.mark.asyncio
    async def test_invalid_identifiers(self, store):
        with pytest.raises(InvalidIdentifierError):
            await store.upload("", b"x", "demo")
        with pytest.raises(InvalidIdentifierError):
            await store.upload("a.pdf", b"x", "bad/scope")

    def test_chunk_size_must_be_positive(self, data_dir):
        with pytest.raises(ValueError):
            ChunkedBlobTier(data_dir, chunk_size=0)
