"""
Size-tiered blob storage for SketchLab Server.

PDF assets are stored in one of two tiers, chosen once at upload time:
- Inline: payloads up to MAX_INLINE_BLOB_SIZE bytes, one row each
- Chunked: larger payloads split into fixed-size segments addressed by
  file id, read back one segment at a time

Callers only see BlobStore; the tier is an implementation detail
reported in BlobRecord for diagnostics.

Table schema:
    files_<project>.db / small_files:
        - file_id TEXT PRIMARY KEY
        - size INTEGER
        - data BLOB
        - uploaded_at INTEGER (Unix ms)

    chunks_<project>.db / large_files:
        - file_id TEXT PRIMARY KEY
        - size INTEGER
        - chunk_size INTEGER
        - chunk_count INTEGER
        - uploaded_at INTEGER (Unix ms)

    chunks_<project>.db / large_chunks:
        - file_id TEXT
        - n INTEGER (segment index, from 0)
        - data BLOB
        - PRIMARY KEY (file_id, n)

Invariants:
    - len(payload) > MAX_INLINE_BLOB_SIZE goes to the chunked tier, else inline
    - A file id lives in at most one tier and never moves
    - An empty payload is a valid inline write
    - Chunked downloads never hold more than one segment in memory

How to change safely:
    - MAX_INLINE_BLOB_SIZE is a deploy-time constant; changing it only
      affects new uploads
    - Never rewrite chunks of an existing file in place
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional, Protocol, Set

from ..errors import DuplicateBlobError, NotFoundError, StorageFailureError
from ..validate import validate_identifier, validate_scope
from ._sqlite import ScopedSqliteStore

logger = logging.getLogger(__name__)

MAX_INLINE_BLOB_SIZE = 16 * 1024 * 1024  # 16 MiB
DEFAULT_CHUNK_SIZE = 255 * 1024


class StorageTier(str, Enum):
    """Storage backend a blob was written to."""

    INLINE = "inline"
    CHUNKED = "chunked"


@dataclass(frozen=True)
class BlobRecord:
    """Metadata for a stored blob.

    Attributes:
        file_id: File identity within the project
        scope: Project name
        size: Payload size in bytes
        tier: Storage tier chosen at upload
        uploaded_at: Upload timestamp (Unix ms)
        chunk_count: Number of segments (1 for inline)
    """

    file_id: str
    scope: str
    size: int
    tier: StorageTier
    uploaded_at: int
    chunk_count: int = 1

    def to_dict(self) -> dict:
        return {
            "fileId": self.file_id,
            "project": self.scope,
            "size": self.size,
            "uploadedAt": self.uploaded_at,
        }


class BlobStream:
    """Byte stream of a downloaded blob.

    Iterate to receive the payload segment by segment, or call read()
    to collect it whole.

    Attributes:
        record: Metadata of the blob being streamed
    """

    def __init__(self, record: BlobRecord, chunks: AsyncIterator[bytes]) -> None:
        self.record = record
        self._chunks = chunks

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks

    async def read(self) -> bytes:
        """Read the remaining payload into memory."""
        return b"".join([chunk async for chunk in self._chunks])


class TierBackend(Protocol):
    """Interface shared by both storage tiers."""

    tier: StorageTier

    async def put(self, scope: str, file_id: str, payload: bytes) -> BlobRecord: ...

    async def stat(self, scope: str, file_id: str) -> Optional[BlobRecord]: ...

    async def names(self, scope: str) -> Set[str]: ...

    def open(self, record: BlobRecord) -> AsyncIterator[bytes]: ...

    async def delete(self, scope: str, file_id: str) -> bool: ...


class InlineBlobTier(ScopedSqliteStore):
    """Small-object tier: the whole payload in a single row."""

    FILE_PREFIX = "files"
    tier = StorageTier.INLINE

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS small_files (
                file_id TEXT PRIMARY KEY,
                size INTEGER NOT NULL,
                data BLOB NOT NULL,
                uploaded_at INTEGER NOT NULL
            );
        """)

    def _record(self, scope: str, row: sqlite3.Row) -> BlobRecord:
        return BlobRecord(
            file_id=row["file_id"],
            scope=scope,
            size=row["size"],
            tier=self.tier,
            uploaded_at=row["uploaded_at"],
        )

    async def put(self, scope: str, file_id: str, payload: bytes) -> BlobRecord:
        now = int(time.time() * 1000)
        async with self._lock:
            with self._storage_errors("store file", scope):
                with self._get_connection(scope) as conn:
                    conn.execute(
                        """
                        INSERT INTO small_files (file_id, size, data, uploaded_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (file_id, len(payload), sqlite3.Binary(payload), now),
                    )
        return BlobRecord(
            file_id=file_id, scope=scope, size=len(payload), tier=self.tier, uploaded_at=now
        )

    async def stat(self, scope: str, file_id: str) -> Optional[BlobRecord]:
        if not await self.scope_exists(scope):
            return None
        with self._storage_errors("read file metadata", scope):
            with self._get_connection(scope) as conn:
                row = conn.execute(
                    "SELECT file_id, size, uploaded_at FROM small_files WHERE file_id = ?",
                    (file_id,),
                ).fetchone()
        return self._record(scope, row) if row else None

    async def names(self, scope: str) -> Set[str]:
        if not await self.scope_exists(scope):
            return set()
        with self._storage_errors("list files", scope):
            with self._get_connection(scope) as conn:
                rows = conn.execute("SELECT file_id FROM small_files").fetchall()
        return {row["file_id"] for row in rows}

    async def open(self, record: BlobRecord) -> AsyncIterator[bytes]:
        with self._storage_errors("read file", record.scope):
            with self._get_connection(record.scope) as conn:
                row = conn.execute(
                    "SELECT data FROM small_files WHERE file_id = ?", (record.file_id,)
                ).fetchone()
        if row is None:
            raise StorageFailureError("read file", record.scope)
        yield bytes(row["data"])

    async def delete(self, scope: str, file_id: str) -> bool:
        if not await self.scope_exists(scope):
            return False
        async with self._lock:
            with self._storage_errors("delete file", scope):
                with self._get_connection(scope) as conn:
                    cursor = conn.execute("DELETE FROM small_files WHERE file_id = ?", (file_id,))
                    return cursor.rowcount > 0


class ChunkedBlobTier(ScopedSqliteStore):
    """Large-object tier: payload split into fixed-size segments."""

    FILE_PREFIX = "chunks"
    tier = StorageTier.CHUNKED

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Initialize the chunked tier.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            chunk_size: Segment size in bytes
        """
        super().__init__(data_dir, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS large_files (
                file_id TEXT PRIMARY KEY,
                size INTEGER NOT NULL,
                chunk_size INTEGER NOT NULL,
                chunk_count INTEGER NOT NULL,
                uploaded_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS large_chunks (
                file_id TEXT NOT NULL,
                n INTEGER NOT NULL,
                data BLOB NOT NULL,
                PRIMARY KEY (file_id, n)
            );
        """)

    def _record(self, scope: str, row: sqlite3.Row) -> BlobRecord:
        return BlobRecord(
            file_id=row["file_id"],
            scope=scope,
            size=row["size"],
            tier=self.tier,
            uploaded_at=row["uploaded_at"],
            chunk_count=row["chunk_count"],
        )

    async def put(self, scope: str, file_id: str, payload: bytes) -> BlobRecord:
        now = int(time.time() * 1000)
        view = memoryview(payload)
        chunk_count = (len(payload) + self.chunk_size - 1) // self.chunk_size

        async with self._lock:
            with self._storage_errors("store file", scope):
                with self._get_connection(scope) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        conn.execute(
                            """
                            INSERT INTO large_files (file_id, size, chunk_size,
                                                     chunk_count, uploaded_at)
                            VALUES (?, ?, ?, ?, ?)
                            """,
                            (file_id, len(payload), self.chunk_size, chunk_count, now),
                        )
                        conn.executemany(
                            "INSERT INTO large_chunks (file_id, n, data) VALUES (?, ?, ?)",
                            (
                                (
                                    file_id,
                                    n,
                                    bytes(view[n * self.chunk_size : (n + 1) * self.chunk_size]),
                                )
                                for n in range(chunk_count)
                            ),
                        )
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise

        return BlobRecord(
            file_id=file_id,
            scope=scope,
            size=len(payload),
            tier=self.tier,
            uploaded_at=now,
            chunk_count=chunk_count,
        )

    async def stat(self, scope: str, file_id: str) -> Optional[BlobRecord]:
        if not await self.scope_exists(scope):
            return None
        with self._storage_errors("read file metadata", scope):
            with self._get_connection(scope) as conn:
                row = conn.execute(
                    "SELECT * FROM large_files WHERE file_id = ?", (file_id,)
                ).fetchone()
        return self._record(scope, row) if row else None

    async def names(self, scope: str) -> Set[str]:
        if not await self.scope_exists(scope):
            return set()
        with self._storage_errors("list files", scope):
            with self._get_connection(scope) as conn:
                rows = conn.execute("SELECT file_id FROM large_files").fetchall()
        return {row["file_id"] for row in rows}

    async def open(self, record: BlobRecord) -> AsyncIterator[bytes]:
        # One connection per segment keeps an abandoned download from
        # pinning a connection open.
        for n in range(record.chunk_count):
            with self._storage_errors("read file", record.scope):
                with self._get_connection(record.scope) as conn:
                    row = conn.execute(
                        "SELECT data FROM large_chunks WHERE file_id = ? AND n = ?",
                        (record.file_id, n),
                    ).fetchone()
            if row is None:
                logger.error(
                    "Missing chunk",
                    extra={"scope": record.scope, "file_id": record.file_id, "chunk": n},
                )
                raise StorageFailureError("read file", record.scope)
            yield bytes(row["data"])
            # Let other tasks run between segments of a large download
            await asyncio.sleep(0)

    async def delete(self, scope: str, file_id: str) -> bool:
        if not await self.scope_exists(scope):
            return False
        async with self._lock:
            with self._storage_errors("delete file", scope):
                with self._get_connection(scope) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = conn.execute(
                            "DELETE FROM large_files WHERE file_id = ?", (file_id,)
                        )
                        conn.execute("DELETE FROM large_chunks WHERE file_id = ?", (file_id,))
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
                    return cursor.rowcount > 0


class BlobStore:
    """Routes blobs between the inline and chunked tiers.

    Attributes:
        inline: Small-object tier
        chunked: Large-object tier
        threshold: Largest payload stored inline

    Example:
        >>> store = BlobStore.open("/var/lib/sketchlab/blobs")
        >>> record = await store.upload("doc1.pdf", pdf_bytes, "demo")
        >>> async for chunk in await store.download("doc1.pdf", "demo"):
        ...     sink.write(chunk)
    """

    def __init__(
        self,
        inline: InlineBlobTier,
        chunked: ChunkedBlobTier,
        threshold: int = MAX_INLINE_BLOB_SIZE,
    ) -> None:
        self.inline = inline
        self.chunked = chunked
        self.threshold = threshold
        # Serializes the cross-tier existence check with the write
        self._upload_lock = asyncio.Lock()

    @classmethod
    def open(
        cls,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> BlobStore:
        """Create a store with both tiers under one directory."""
        return cls(
            inline=InlineBlobTier(data_dir, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms),
            chunked=ChunkedBlobTier(
                data_dir,
                wal_mode=wal_mode,
                busy_timeout_ms=busy_timeout_ms,
                chunk_size=chunk_size,
            ),
        )

    @property
    def tiers(self) -> List[TierBackend]:
        """Tiers in lookup order."""
        return [self.inline, self.chunked]

    def select_tier(self, size: int) -> TierBackend:
        """Tier for a payload of the given size."""
        return self.chunked if size > self.threshold else self.inline

    async def upload(self, file_id: str, payload: bytes, scope: str) -> BlobRecord:
        """Store a blob.

        Args:
            file_id: File identity within the project
            payload: File content (may be empty)
            scope: Project name

        Returns:
            BlobRecord of the stored blob

        Raises:
            InvalidIdentifierError: If file_id or scope is malformed
            DuplicateBlobError: If the file id is already stored
            StorageFailureError: If the write fails
        """
        validate_scope(scope)
        validate_identifier(file_id, "file")

        async with self._upload_lock:
            if await self.stat(file_id, scope) is not None:
                raise DuplicateBlobError(file_id, scope)
            backend = self.select_tier(len(payload))
            record = await backend.put(scope, file_id, bytes(payload))

        logger.info(
            "Stored file",
            extra={
                "scope": scope,
                "file_id": file_id,
                "size": record.size,
                "tier": record.tier.value,
                "chunks": record.chunk_count,
            },
        )
        return record

    async def list(self, scope: str) -> Set[str]:
        """File identities stored in a project, across both tiers."""
        validate_scope(scope)
        names: Set[str] = set()
        for backend in self.tiers:
            names |= await backend.names(scope)
        return names

    async def stat(self, file_id: str, scope: str) -> Optional[BlobRecord]:
        """Metadata for a file, or None if it is in neither tier."""
        validate_scope(scope)
        validate_identifier(file_id, "file")
        for backend in self.tiers:
            record = await backend.stat(scope, file_id)
            if record is not None:
                return record
        return None

    async def download(self, file_id: str, scope: str) -> BlobStream:
        """Open a stored file for reading.

        Probes the inline tier first, then the chunked tier.

        Raises:
            NotFoundError: If the file is in neither tier
        """
        validate_scope(scope)
        validate_identifier(file_id, "file")
        for backend in self.tiers:
            record = await backend.stat(scope, file_id)
            if record is not None:
                return BlobStream(record, backend.open(record))
        raise NotFoundError("file", file_id, scope)

    async def delete(self, file_id: str, scope: str) -> BlobRecord:
        """Remove a file from whichever tier holds it.

        Raises:
            NotFoundError: If the file is in neither tier
        """
        async with self._upload_lock:
            record = await self.stat(file_id, scope)
            if record is None:
                raise NotFoundError("file", file_id, scope)
            backend = self.inline if record.tier == StorageTier.INLINE else self.chunked
            await backend.delete(scope, file_id)

        logger.info(
            "Deleted file",
            extra={"scope": scope, "file_id": file_id, "tier": record.tier.value},
        )
        return record
