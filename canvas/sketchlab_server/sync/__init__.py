"""
Multi-client synchronization for SketchLab Server.

This module provides:
- ConnectionRegistry: live channels keyed by client identity
- VersionTracker: per-client last-seen version plus the canonical sentinel
- SyncBroadcaster: REFRESHED pushes after writes and raw peer relay

Invariants:
    - Registry and tracker are independent maps over the same identities
    - A disconnect removes the identity from both before other work runs
    - Pushes are best-effort; a failed recipient never fails the write

How to change safely:
    - Add frame types to protocol.MessageType, never reuse names
    - Test with concurrent connect/mutate/disconnect sequences
"""

from .broadcaster import SyncBroadcaster
from .protocol import Channel, MessageType, encode_frame
from .registry import ConnectionRegistry
from .tracker import CANONICAL_IDENTITY, VersionRecord, VersionTracker

__all__ = [
    "Channel",
    "MessageType",
    "encode_frame",
    "ConnectionRegistry",
    "VersionTracker",
    "VersionRecord",
    "CANONICAL_IDENTITY",
    "SyncBroadcaster",
]
