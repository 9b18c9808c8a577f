"""
Presence / version tracker for SketchLab Server.

The tracker keeps one version token per joined client plus a sentinel
entry for the canonical stored state. A client whose token differs from
the sentinel has not been sent the latest document and is "stale".

Invariants:
    - Exactly one sentinel entry exists and holds the latest write's token
    - Tokens are fresh random values; equality is the only comparison
    - A new client starts with the sentinel token copied in
    - The sentinel is never reported as stale and cannot be dropped

How to change safely:
    - Keep every map access under the lock
    - Never compare tokens for ordering; they are opaque
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Set

from ..errors import DuplicateClientError

logger = logging.getLogger(__name__)

CANONICAL_IDENTITY = "__canonical__"


def new_version() -> str:
    """Generate a fresh version token."""
    return uuid.uuid4().hex


@dataclass
class VersionRecord:
    """Last version a client has been sent.

    Attributes:
        version: Opaque version token
        scope: Project the client joined (None for the sentinel)
    """

    version: str
    scope: Optional[str] = None


class VersionTracker:
    """Tracks which clients have seen the latest document state.

    Example:
        >>> tracker = VersionTracker()
        >>> await tracker.add_client("c1", scope="demo")
        >>> version = await tracker.record_mutation()
        >>> await tracker.stale_clients(version)
        {'c1'}
        >>> await tracker.mark_seen("c1", version)
    """

    def __init__(self) -> None:
        self._records: Dict[str, VersionRecord] = {
            CANONICAL_IDENTITY: VersionRecord(version=new_version()),
        }
        self._lock = asyncio.Lock()

    @property
    def current_version(self) -> str:
        """Token written by the most recent mutation."""
        return self._records[CANONICAL_IDENTITY].version

    async def add_client(self, identity: str, scope: Optional[str] = None) -> str:
        """Start tracking a client.

        The client inherits the sentinel token, so it is not stale until
        the next mutation after it joined.

        Args:
            identity: Client identity
            scope: Project the client is viewing

        Returns:
            The version copied into the new record

        Raises:
            DuplicateClientError: If the identity is already tracked
        """
        if identity == CANONICAL_IDENTITY:
            raise DuplicateClientError(identity)

        async with self._lock:
            if identity in self._records:
                raise DuplicateClientError(identity)
            version = self.current_version
            self._records[identity] = VersionRecord(version=version, scope=scope)

        logger.debug("Client joined", extra={"client_id": identity, "scope": scope})
        return version

    async def has_client(self, identity: str) -> bool:
        """Whether the identity is tracked."""
        if identity == CANONICAL_IDENTITY:
            return False
        async with self._lock:
            return identity in self._records

    async def client_scope(self, identity: str) -> Optional[str]:
        """Project a tracked client joined, or None."""
        async with self._lock:
            record = self._records.get(identity)
            return record.scope if record else None

    async def record_mutation(self, author: Optional[str] = None) -> str:
        """Record that canonical state changed.

        Every client except the author becomes stale by construction.

        Args:
            author: Client that performed the write, if any. Its record is
                moved to the new version because it already holds the state.

        Returns:
            The new version token
        """
        version = new_version()
        async with self._lock:
            self._records[CANONICAL_IDENTITY].version = version
            if author is not None and author != CANONICAL_IDENTITY:
                record = self._records.get(author)
                if record is not None:
                    record.version = version
        return version

    async def stale_clients(self, version: str, scope: Optional[str] = None) -> Set[str]:
        """Clients whose token differs from a version.

        Args:
            version: Version to compare against (normally the latest)
            scope: Restrict to clients that joined this project

        Returns:
            Set of stale client identities (never the sentinel)
        """
        async with self._lock:
            return {
                identity
                for identity, record in self._records.items()
                if identity != CANONICAL_IDENTITY
                and record.version != version
                and (scope is None or record.scope == scope)
            }

    async def mark_seen(self, identity: str, version: str) -> bool:
        """Record that a client has been sent a version.

        Args:
            identity: Client identity
            version: Version that was delivered

        Returns:
            True if the client is tracked and was updated
        """
        if identity == CANONICAL_IDENTITY:
            return False
        async with self._lock:
            record = self._records.get(identity)
            if record is None:
                return False
            record.version = version
            return True

    async def drop_unless_seen(self, identity: str, version: str) -> bool:
        """Stop tracking a client whose record still holds `version`.

        Used when the push that should have delivered `version` failed. A
        client that has since been sent a newer version is kept.

        Returns:
            True if the record was dropped
        """
        if identity == CANONICAL_IDENTITY:
            return False
        async with self._lock:
            record = self._records.get(identity)
            if record is None or record.version != version:
                return False
            del self._records[identity]
        logger.debug("Client dropped after failed push", extra={"client_id": identity})
        return True

    async def version_of(self, identity: str) -> Optional[str]:
        """Version last recorded for an identity (sentinel included)."""
        async with self._lock:
            record = self._records.get(identity)
            return record.version if record else None

    async def drop_client(self, identity: str) -> None:
        """Stop tracking a client. Unknown identities are ignored."""
        if identity == CANONICAL_IDENTITY:
            return
        async with self._lock:
            removed = self._records.pop(identity, None)
        if removed is not None:
            logger.debug("Client dropped from tracker", extra={"client_id": identity})

    def __len__(self) -> int:
        return len(self._records) - 1
