"""
Synchronization broadcaster for SketchLab Server.

After a confirmed document write, the broadcaster bumps the canonical
version, works out which clients are stale and pushes them the full
refreshed document. Independently, it relays raw peer frames to every
other connection.

Propagation runs in two steps. prepare() records the mutation and fixes
the recipients and document; callers run it under their write lock so
version order matches write order. deliver() performs the sends after
that lock is released, concurrently, and returns within send_timeout;
pushes still queued behind a stalled one finish in the background.

Invariants:
    - One recipient's failure or stall never delays delivery to the others
    - mark_seen is called only after a push was written to the channel
    - Pushes to one client are sent in batch order; a batch superseded by
      a newer one for the same client is dropped instead of sent late
    - Absent or closed clients are skipped; they resync on re-registration

How to change safely:
    - Never call deliver() while holding a write lock
    - Keep pushes best-effort (at most once per stale marking)
    - Relay stays unfiltered; do not parse peer frames here
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .protocol import DEFAULT_SEND_TIMEOUT, MessageType, encode_frame, send_payload
from .registry import ConnectionRegistry
from .tracker import VersionTracker

logger = logging.getLogger(__name__)


@dataclass
class RefreshBatch:
    """Document state fixed for a set of recipients.

    Attributes:
        sequence: Position in the broadcaster's push order
        version: Version marked as seen after a successful send
        document: Notes in wire format
        recipients: Identities to push to
        scope: Project the document belongs to
    """

    sequence: int
    version: str
    document: List[Dict[str, Any]]
    recipients: List[str] = field(default_factory=list)
    scope: Optional[str] = None


class SyncBroadcaster:
    """Pushes refreshed state to stale clients and relays peer frames.

    Attributes:
        registry: Live connections
        tracker: Per-client version records
        send_timeout: Seconds one recipient may take to accept a push
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        tracker: VersionTracker,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self.send_timeout = send_timeout
        self._sequence = 0
        self._latest: Dict[str, int] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._pushed_count = 0
        self._relayed_count = 0
        self._timeout_count = 0
        self._background: Set[asyncio.Task] = set()

    def batch(
        self,
        recipients: List[str],
        document: List[Dict[str, Any]],
        version: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> RefreshBatch:
        """Reserve the next push position for a set of recipients.

        Args:
            recipients: Identities to push to
            document: Notes in wire format
            version: Version to mark as seen (the current sentinel when omitted)
            scope: Project of the document, for logging
        """
        self._sequence += 1
        for identity in recipients:
            self._latest[identity] = self._sequence
        return RefreshBatch(
            sequence=self._sequence,
            version=version if version is not None else self.tracker.current_version,
            document=document,
            recipients=list(recipients),
            scope=scope,
        )

    async def prepare(self, result: Any) -> RefreshBatch:
        """Record a confirmed mutation and fix who must be refreshed.

        Args:
            result: MutationResult (needs scope, author and document_dicts())
        """
        version = await self.tracker.record_mutation(author=result.author)
        stale = await self.tracker.stale_clients(version, scope=result.scope)
        return self.batch(sorted(stale), result.document_dicts(), version, result.scope)

    async def deliver(self, batch: RefreshBatch) -> Set[str]:
        """Send a batch to all its recipients concurrently.

        Waits at most send_timeout. A push still waiting behind an earlier
        one for the same client keeps running after this returns and is
        not counted as delivered.

        Returns:
            Identities that were sent a REFRESHED frame
        """
        tasks = {
            identity: asyncio.ensure_future(self._push(identity, batch))
            for identity in batch.recipients
        }
        if tasks:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.send_timeout)
            for task in pending:
                self._background.add(task)
                task.add_done_callback(self._background.discard)

        delivered = {
            identity
            for identity, task in tasks.items()
            if task.done() and not task.cancelled() and task.result()
        }

        logger.info(
            "Refresh delivered",
            extra={
                "scope": batch.scope,
                "version": batch.version,
                "stale": len(batch.recipients),
                "delivered": len(delivered),
            },
        )
        return delivered

    async def on_mutation(self, result: Any) -> Set[str]:
        """Propagate a confirmed mutation (prepare, then deliver)."""
        return await self.deliver(await self.prepare(result))

    async def push_state(
        self,
        identity: str,
        document: List[Dict[str, Any]],
        version: Optional[str] = None,
    ) -> bool:
        """Send the full document to one client.

        Args:
            identity: Recipient
            document: Notes in wire format
            version: Version to mark as seen after a successful send
                (the current sentinel version when omitted)

        Returns:
            True if the frame was written
        """
        return await self._push(identity, self.batch([identity], document, version))

    async def _push(self, identity: str, batch: RefreshBatch) -> bool:
        lock = self._send_locks.setdefault(identity, asyncio.Lock())
        async with lock:
            if self._latest.get(identity, 0) > batch.sequence:
                logger.debug(
                    "Skipping superseded push",
                    extra={"client_id": identity, "version": batch.version},
                )
                return False

            channel = await self.registry.get(identity)
            if channel is None or channel.closed:
                logger.debug("Skipping push to disconnected client", extra={"client_id": identity})
                return False

            frame = encode_frame(identity, MessageType.REFRESHED, batch.document)
            try:
                await send_payload(channel, frame, self.send_timeout)
            except asyncio.TimeoutError:
                self._timeout_count += 1
                logger.warning(
                    f"Refresh push timed out after {self.send_timeout}s",
                    extra={"client_id": identity, "version": batch.version},
                )
                return False
            except Exception as e:
                logger.warning(
                    f"Refresh push failed: {e}",
                    extra={"client_id": identity, "version": batch.version},
                )
                return False

            await self.tracker.mark_seen(identity, batch.version)
            self._pushed_count += 1
            return True

    async def drain(self) -> None:
        """Wait for pushes that outlived their deliver() call."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def forget(self, identity: str) -> None:
        """Drop push bookkeeping for a client that left."""
        self._latest.pop(identity, None)
        self._send_locks.pop(identity, None)

    async def relay(self, sender_identity: str, payload: str | bytes) -> int:
        """Forward a raw peer frame to every other open connection."""
        delivered = await self.registry.broadcast_except(sender_identity, payload)
        self._relayed_count += delivered
        return delivered

    @property
    def stats(self) -> Dict[str, Any]:
        """Broadcaster statistics."""
        return {
            "connections": len(self.registry),
            "tracked_clients": len(self.tracker),
            "pushed_count": self._pushed_count,
            "relayed_count": self._relayed_count,
            "push_timeouts": self._timeout_count,
        }
