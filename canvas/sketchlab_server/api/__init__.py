"""
API module for SketchLab Server.

This module provides the external interfaces:
- CanvasService: transport-independent request handling
- HTTP server: REST endpoints and the WebSocket channel (aiohttp)

Invariants:
    - All persistence requests carry a project scope
    - Writes are confirmed by the store before any client is refreshed

How to change safely:
    - Put new behavior in CanvasService, keep handlers thin
    - Keep error payloads in the {status, message, error_code} shape
"""

from .http_server import create_http_app
from .service import CanvasService

__all__ = [
    "CanvasService",
    "create_http_app",
]
