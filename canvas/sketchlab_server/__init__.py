"""
SketchLab Server - realtime backend for a collaborative annotation canvas.

This package implements the server side of a shared canvas where clients
attach sticky notes and PDF-derived markers to project documents:
- Sticky notes per project, stored in SQLite (last writer wins)
- Live WebSocket channels that receive refreshed state after every write
- Peer relay of raw frames between connected clients
- Size-tiered storage for PDF assets (inline vs. chunked)

Architecture:
    ┌─────────────┐  HTTP   ┌──────────────┐      ┌─────────────────┐
    │   Client    │────────▶│ CanvasService│─────▶│ DocumentStore / │
    │  (browser)  │         │              │      │ BlobStore       │
    └──────┬──────┘         └──────┬───────┘      └─────────────────┘
           │ WebSocket             │ on_mutation
           ▼                       ▼
    ┌──────────────┐       ┌────────────────┐      ┌────────────────┐
    │ Connection   │◀──────│ SyncBroadcaster│─────▶│ VersionTracker │
    │ Registry     │       └────────────────┘      └────────────────┘
    └──────────────┘

Invariants:
    - Every persistence operation is scoped by a project name
    - The tracker sentinel always holds the version of the latest write
    - A blob's storage tier is chosen once, at upload time

How to change safely:
    - Keep the WebSocket frame shape ({clientId, type, data}) stable
    - Never expose the blob tier to callers above BlobStore
"""

from ._version import __version__

__all__ = ["__version__"]
