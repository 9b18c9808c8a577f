"""
Connection registry for SketchLab Server.

Owns every live client channel, keyed by a 128-bit random identity.
The registry announces the identity to the client on registration and
cleans up the tracker entry when the client goes away.

Invariants:
    - Identities are unique among active connections
    - Every register() sends exactly one REGISTER-USER frame
    - unregister() removes the channel and the tracker record
    - Broadcasts iterate a snapshot taken under the lock and write to all
      peers concurrently, each send bounded by send_timeout

How to change safely:
    - Never await a send while holding the lock
    - Keep closed peers silent: they are not errors for the sender
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Tuple

from ..errors import DuplicateClientError
from .protocol import DEFAULT_SEND_TIMEOUT, Channel, MessageType, encode_frame, send_payload
from .tracker import VersionTracker

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Concurrency-safe map of client identity to channel.

    Attributes:
        tracker: Version tracker notified on disconnect (optional)
        send_timeout: Seconds a single peer may take to accept a frame

    Example:
        >>> registry = ConnectionRegistry(tracker)
        >>> client_id = await registry.register(ws)
        >>> await registry.broadcast_except(client_id, raw_frame)
        >>> await registry.unregister(client_id)
    """

    def __init__(
        self,
        tracker: Optional[VersionTracker] = None,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        """Initialize the registry.

        Args:
            tracker: Tracker whose record is dropped when a client leaves
            send_timeout: Per-peer send timeout in seconds
        """
        self.tracker = tracker
        self.send_timeout = send_timeout
        self._channels: Dict[str, Channel] = {}
        self._lock = asyncio.Lock()

    async def register(self, channel: Channel, identity: Optional[str] = None) -> str:
        """Register a channel and announce its identity.

        Args:
            channel: Open channel for the new client
            identity: Explicit identity (generated when omitted)

        Returns:
            The client identity

        Raises:
            DuplicateClientError: If an explicit identity is already active
        """
        async with self._lock:
            if identity is None:
                identity = str(uuid.uuid4())
                while identity in self._channels:
                    identity = str(uuid.uuid4())
            elif identity in self._channels:
                raise DuplicateClientError(identity)
            self._channels[identity] = channel

        logger.info("Client connected", extra={"client_id": identity})

        try:
            await send_payload(
                channel,
                encode_frame(identity, MessageType.REGISTER_USER, []),
                self.send_timeout,
            )
        except Exception as e:
            # A channel that dies during the handshake is a disconnect
            logger.warning(
                f"Failed to announce identity: {e}",
                extra={"client_id": identity},
            )
            await self.unregister(identity)
            raise

        return identity

    async def get(self, identity: str) -> Optional[Channel]:
        """Channel for an identity, or None."""
        async with self._lock:
            return self._channels.get(identity)

    async def unregister(self, identity: str) -> None:
        """Remove a client and its version record.

        Safe to call more than once.
        """
        async with self._lock:
            removed = self._channels.pop(identity, None)

        if self.tracker is not None:
            await self.tracker.drop_client(identity)

        if removed is not None:
            logger.info("Client disconnected", extra={"client_id": identity})

    async def snapshot(self) -> List[Tuple[str, Channel]]:
        """Point-in-time copy of the active connections."""
        async with self._lock:
            return list(self._channels.items())

    async def active_identities(self) -> List[str]:
        """Identities of all registered channels."""
        async with self._lock:
            return list(self._channels)

    async def broadcast_except(self, sender_identity: Optional[str], payload: str | bytes) -> int:
        """Deliver a raw payload to every open channel except the sender.

        Args:
            sender_identity: Identity to skip (None delivers to everyone)
            payload: Text or binary frame, forwarded unmodified

        Returns:
            Number of channels the payload was written to
        """
        peers = [
            (identity, channel)
            for identity, channel in await self.snapshot()
            if identity != sender_identity and not channel.closed
        ]
        results = await asyncio.gather(
            *(
                self._relay_one(identity, channel, sender_identity, payload)
                for identity, channel in peers
            )
        )
        return sum(results)

    async def _relay_one(
        self,
        identity: str,
        channel: Channel,
        sender_identity: Optional[str],
        payload: str | bytes,
    ) -> bool:
        try:
            await send_payload(channel, payload, self.send_timeout)
        except Exception as e:
            logger.warning(
                f"Relay to peer failed: {e!r}",
                extra={"client_id": identity, "sender_id": sender_identity},
            )
            return False
        return True

    async def close_all(self) -> None:
        """Close every channel and clear the registry (shutdown)."""
        for identity, channel in await self.snapshot():
            close = getattr(channel, "close", None)
            if close is not None and not channel.closed:
                try:
                    await close()
                except Exception as e:
                    logger.warning(f"Error closing channel: {e}", extra={"client_id": identity})
            await self.unregister(identity)

    def __len__(self) -> int:
        return len(self._channels)
