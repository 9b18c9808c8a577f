"""
Channel protocol types for SketchLab Server.

Defines the Channel protocol that every live connection must satisfy and
the JSON frames the server originates. Relayed peer frames are not built
here; they are forwarded byte-for-byte.

Frame shape:
    {"clientId": "<uuid>", "type": "REGISTER-USER" | "REFRESHED", "data": [...]}

Invariants:
    - Server frames are JSON text frames
    - clientId is always the recipient's own identity
    - Sends go through send_payload so a stalled peer cannot hold a caller
      longer than its timeout
"""

from __future__ import annotations

import asyncio
import json
from abc import abstractmethod
from enum import Enum
from typing import Any, List, Optional, Protocol, runtime_checkable

DEFAULT_SEND_TIMEOUT = 10.0


class MessageType(str, Enum):
    """Types of frames the server sends on its own initiative."""

    REGISTER_USER = "REGISTER-USER"
    REFRESHED = "REFRESHED"


@runtime_checkable
class Channel(Protocol):
    """A bidirectional connection to one client.

    aiohttp's WebSocketResponse satisfies this protocol; tests use a
    small in-memory fake.
    """

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Whether the channel can no longer be written."""
        ...

    @abstractmethod
    async def send_str(self, data: str) -> None:
        """Send a text frame."""
        ...

    @abstractmethod
    async def send_bytes(self, data: bytes) -> None:
        """Send a binary frame."""
        ...


def encode_frame(client_id: str, message_type: MessageType, data: List[Any]) -> str:
    """Serialize a server frame.

    Args:
        client_id: Identity of the recipient
        message_type: Frame type
        data: Frame payload (empty list or document notes)

    Returns:
        JSON text
    """
    return json.dumps(
        {"clientId": client_id, "type": message_type.value, "data": data},
        separators=(",", ":"),
    )


async def send_payload(
    channel: Channel,
    payload: str | bytes,
    timeout: Optional[float] = None,
) -> None:
    """Send a raw payload using the frame kind that matches its type.

    Args:
        channel: Recipient channel
        payload: Text or binary frame
        timeout: Seconds to wait for the channel to accept the frame
            (None waits as long as the channel takes)

    Raises:
        asyncio.TimeoutError: If the channel did not drain in time
    """
    if isinstance(payload, bytes):
        send = channel.send_bytes(payload)
    else:
        send = channel.send_str(payload)
    await asyncio.wait_for(send, timeout)
