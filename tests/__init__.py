"""
SketchLab Test Suite.

This package contains:
- unit/: Unit tests (stores on temporary SQLite files, fake channels)
- integration/: Integration tests (real aiohttp server and WebSocket clients)
"""
