"""
Request service for SketchLab Server.

CanvasService is the single entry point the transport layer talks to. It
validates requests, drives the stores and hands confirmed writes to the
broadcaster. It knows nothing about HTTP; errors are raised as
SketchLabError subclasses and mapped to responses by the HTTP layer.

Invariants:
    - A client must be connected before it can join a project
    - Only joined clients may mutate documents
    - Document write and its version bump run under one lock, so version
      order always matches write order
    - Pushes are sent after that lock is released; a slow recipient never
      holds up other writes
    - A failed push to a recipient never fails the originating write

How to change safely:
    - Keep transport concerns (status codes, frames) out of this module
    - New mutating operations must go through _commit()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .._version import __version__
from ..errors import UnknownClientError
from ..store.blobs import BlobRecord, BlobStore, BlobStream
from ..store.documents import DocumentMutation, DocumentStore, MutationResult
from ..sync.broadcaster import SyncBroadcaster
from ..sync.protocol import DEFAULT_SEND_TIMEOUT, Channel
from ..sync.registry import ConnectionRegistry
from ..sync.tracker import VersionTracker
from ..validate import validate_identifier, validate_scope

logger = logging.getLogger(__name__)


class CanvasService:
    """Coordinates stores, connections and synchronization.

    Attributes:
        documents: Sticky-note store
        blobs: Size-tiered file store
        registry: Live connections
        tracker: Per-client versions
        broadcaster: Refresh pushes and peer relay
    """

    def __init__(
        self,
        documents: DocumentStore,
        blobs: BlobStore,
        registry: Optional[ConnectionRegistry] = None,
        tracker: Optional[VersionTracker] = None,
        broadcaster: Optional[SyncBroadcaster] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        """Initialize the service.

        Args:
            documents: DocumentStore instance
            blobs: BlobStore instance
            registry: ConnectionRegistry (created when omitted)
            tracker: VersionTracker (created when omitted)
            broadcaster: SyncBroadcaster (created when omitted)
            send_timeout: Per-recipient send timeout for created components
        """
        self.documents = documents
        self.blobs = blobs
        self.tracker = tracker or VersionTracker()
        self.registry = registry or ConnectionRegistry(self.tracker, send_timeout=send_timeout)
        self.broadcaster = broadcaster or SyncBroadcaster(
            self.registry, self.tracker, send_timeout=send_timeout
        )
        self._mutation_lock = asyncio.Lock()

    # Connections

    async def connect(self, channel: Channel) -> str:
        """Register a new channel; the client receives REGISTER-USER."""
        return await self.registry.register(channel)

    async def disconnect(self, client_id: str) -> None:
        """Forget a channel and its version record."""
        await self.registry.unregister(client_id)
        self.broadcaster.forget(client_id)

    async def relay(self, client_id: str, payload: str | bytes) -> int:
        """Forward a raw frame from one client to all others."""
        return await self.broadcaster.relay(client_id, payload)

    async def join(self, client_id: Any, scope: Any) -> Dict[str, Any]:
        """Join a connected client to a project.

        The client starts tracking at the current version and is sent the
        full document immediately. If that push fails the client is not
        kept as joined, so a retry performs a fresh full-state pull.

        Raises:
            InvalidIdentifierError: If client id or scope is malformed
            UnknownClientError: If the client has no live connection
            DuplicateClientError: If the client already joined
        """
        client_id = validate_identifier(client_id, "client")
        scope = validate_scope(scope)

        if await self.registry.get(client_id) is None:
            raise UnknownClientError(client_id)

        async with self._mutation_lock:
            version = await self.tracker.add_client(client_id, scope)
            try:
                notes = await self.documents.load(scope)
            except Exception:
                await self.tracker.drop_client(client_id)
                raise
            batch = self.broadcaster.batch(
                [client_id], [n.to_dict() for n in notes], version, scope
            )

        pushed = client_id in await self.broadcaster.deliver(batch)
        if not pushed and await self.tracker.drop_unless_seen(client_id, version):
            logger.warning("Initial state not delivered", extra={"client_id": client_id})
            return {"clientId": client_id, "project": scope, "refreshed": False}

        logger.info("Client joined project", extra={"client_id": client_id, "scope": scope})
        return {"clientId": client_id, "project": scope, "refreshed": pushed}

    # Documents

    async def _require_client(self, client_id: Any) -> str:
        client_id = validate_identifier(client_id, "client")
        if not await self.tracker.has_client(client_id):
            raise UnknownClientError(client_id)
        return client_id

    async def _commit(self, write: Any) -> tuple[MutationResult, List[str]]:
        async with self._mutation_lock:
            result = await write()
            batch = await self.broadcaster.prepare(result)
        delivered = await self.broadcaster.deliver(batch)
        return result, sorted(delivered)

    async def update_note(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a note and push the new document.

        Args:
            body: {clientId, project, noteId, noteText, notePos}

        Raises:
            UnknownClientError: If clientId never joined
            InvalidIdentifierError: If the body is malformed
            StorageFailureError: If the write fails
        """
        client_id = await self._require_client(body.get("clientId"))
        mutation = DocumentMutation.from_request(body.get("project"), body, author=client_id)

        result, delivered = await self._commit(lambda: self.documents.apply(mutation))

        message = (
            "New note added successfully, and all has been updated"
            if result.created
            else "Note modified successfully, and all has been updated"
        )
        return {
            "message": message,
            "data": {
                "note": result.note.to_dict(),
                "document": result.document_dicts(),
                "refreshed": delivered,
            },
        }

    async def delete_note(self, scope: Any, note_id: Any, client_id: Any) -> Dict[str, Any]:
        """Delete a note and push the new document.

        Raises:
            UnknownClientError: If client_id never joined
            InvalidIdentifierError: If scope or note id is malformed
            NotFoundError: If the note does not exist
        """
        client_id = await self._require_client(client_id)
        scope = validate_scope(scope)
        note_id = validate_identifier(note_id, "note")

        result, delivered = await self._commit(
            lambda: self.documents.delete(scope, note_id, author=client_id)
        )
        return {
            "message": "Note deleted successfully",
            "data": {
                "note": result.note.to_dict(),
                "document": result.document_dicts(),
                "refreshed": delivered,
            },
        }

    async def load_notes(self, scope: Any) -> List[Dict[str, Any]]:
        """Current document of a project in wire format."""
        notes = await self.documents.load(validate_scope(scope))
        return [n.to_dict() for n in notes]

    # Files

    async def upload_file(self, scope: Any, file_id: Any, payload: bytes) -> BlobRecord:
        """Store a file in the tier its size calls for."""
        return await self.blobs.upload(file_id, payload, scope)

    async def list_files(self, scope: Any) -> List[str]:
        """File identities of a project, sorted."""
        return sorted(await self.blobs.list(scope))

    async def open_file(self, scope: Any, file_id: Any) -> BlobStream:
        """Open a file for streaming download."""
        return await self.blobs.download(file_id, scope)

    async def delete_file(self, scope: Any, file_id: Any) -> BlobRecord:
        """Remove a file."""
        return await self.blobs.delete(file_id, scope)

    # Status

    async def health(self) -> Dict[str, Any]:
        """Server health status."""
        return {
            "healthy": True,
            "version": __version__,
            "components": {"documents": "healthy", "blobs": "healthy"},
            **self.broadcaster.stats,
        }
