"""
Persistence for SketchLab Server.

This module handles:
- Per-project sticky-note documents (DocumentStore)
- Size-tiered PDF/blob storage (BlobStore over InlineBlobTier and ChunkedBlobTier)

Both stores keep one SQLite file per project scope and report failures
of the engine as StorageFailureError.

Invariants:
    - Every operation is parameterized by a validated project scope
    - Document writes are last-writer-wins upserts
    - Blob tiers are chosen at upload and never change

How to change safely:
    - Use transactions for all multi-statement writes
    - Keep the inline threshold a code constant
"""

from .blobs import (
    MAX_INLINE_BLOB_SIZE,
    BlobRecord,
    BlobStore,
    BlobStream,
    ChunkedBlobTier,
    InlineBlobTier,
    StorageTier,
)
from .documents import DocumentMutation, DocumentStore, MutationResult, Note, NotePosition

__all__ = [
    "MAX_INLINE_BLOB_SIZE",
    "BlobRecord",
    "BlobStore",
    "BlobStream",
    "ChunkedBlobTier",
    "InlineBlobTier",
    "StorageTier",
    "DocumentMutation",
    "DocumentStore",
    "MutationResult",
    "Note",
    "NotePosition",
]
